import hashlib

from django.contrib.auth import get_user_model

from jobs.models import Job
from jobs.services.lifecycle import JobLifecycle

User = get_user_model()

# étapes du cycle de vie pour amener un job jusqu'à un statut donné
_PATH = {
    Job.STATUS_REQUESTED: [],
    Job.STATUS_ACCEPTED: ["accept"],
    Job.STATUS_IN_PROGRESS: ["accept", "start"],
    Job.STATUS_COMPLETED: ["accept", "start", "complete"],
}


def make_user(username, **extra):
    return User.objects.create_user(username=username, password="pass-1234", **extra)


def make_job(client, runner=None, status=Job.STATUS_COMPLETED, price_cents=2500):
    job = Job.objects.create(client=client, title="Pick up groceries", price_cents=price_cents)
    lifecycle = JobLifecycle()
    for step in _PATH[status]:
        job = getattr(lifecycle, step)(job.id, runner)
    return job


def preimage_pair(seed: str = "errandbit"):
    """(préimage, payment_hash) valides, déterministes."""
    preimage = hashlib.sha256(seed.encode()).hexdigest()
    return preimage, hashlib.sha256(bytes.fromhex(preimage)).hexdigest()
