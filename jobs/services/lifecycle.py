"""
Machine à états du cycle de vie d'un job.

    requested -> accepted -> in_progress -> completed -> payment_confirmed
    requested/accepted/in_progress -> cancelled
    completed/payment_confirmed   -> disputed

Toute transition passe par JobLifecycle: la ligne du job est verrouillée
(select_for_update) dans la même transaction que l'écriture du statut, et les
gardes lèvent une ConflictError avec un code stable au lieu d'un no-op.
"""
import logging
from dataclasses import dataclass

from django.db import transaction
from django.utils import timezone

from core import errors
from core.permissions.job_participant import is_admin, is_participant
from jobs.models import Job

logger = logging.getLogger("errandbit.jobs")

EVENT_ACCEPT = "accept"
EVENT_START = "start"
EVENT_COMPLETE = "complete"
EVENT_CREATE_PAYMENT = "create_payment"
EVENT_CONFIRM_PAYMENT = "confirm_payment"
EVENT_DISPUTE = "dispute"
EVENT_CANCEL = "cancel"

TRANSITIONS = {
    (Job.STATUS_REQUESTED, EVENT_ACCEPT): Job.STATUS_ACCEPTED,
    (Job.STATUS_ACCEPTED, EVENT_START): Job.STATUS_IN_PROGRESS,
    (Job.STATUS_IN_PROGRESS, EVENT_COMPLETE): Job.STATUS_COMPLETED,
    (Job.STATUS_COMPLETED, EVENT_CREATE_PAYMENT): Job.STATUS_COMPLETED,
    (Job.STATUS_COMPLETED, EVENT_CONFIRM_PAYMENT): Job.STATUS_PAYMENT_CONFIRMED,
    (Job.STATUS_COMPLETED, EVENT_DISPUTE): Job.STATUS_DISPUTED,
    (Job.STATUS_PAYMENT_CONFIRMED, EVENT_DISPUTE): Job.STATUS_DISPUTED,
    (Job.STATUS_REQUESTED, EVENT_CANCEL): Job.STATUS_CANCELLED,
    (Job.STATUS_ACCEPTED, EVENT_CANCEL): Job.STATUS_CANCELLED,
    (Job.STATUS_IN_PROGRESS, EVENT_CANCEL): Job.STATUS_CANCELLED,
}

# code d'erreur quand l'événement n'est pas permis depuis l'état courant
INVALID_STATE_CODES = {
    EVENT_ACCEPT: ("Job is not available", "JOB_NOT_AVAILABLE"),
    EVENT_START: ("Job must be accepted to start", "INVALID_JOB_STATUS"),
    EVENT_COMPLETE: ("Job must be in progress to complete", "INVALID_JOB_STATUS"),
    EVENT_CREATE_PAYMENT: ("Can only create payment for completed jobs", "JOB_NOT_COMPLETED"),
    EVENT_CONFIRM_PAYMENT: ("Can only confirm payment for completed jobs", "JOB_NOT_COMPLETED"),
    EVENT_DISPUTE: ("Job cannot be disputed in its current status", "INVALID_JOB_STATUS"),
    EVENT_CANCEL: ("Job cannot be cancelled in its current status", "JOB_NOT_CANCELLABLE"),
}

TIMESTAMP_FIELDS = {
    Job.STATUS_ACCEPTED: "accepted_at",
    Job.STATUS_IN_PROGRESS: "started_at",
    Job.STATUS_COMPLETED: "completed_at",
    Job.STATUS_PAYMENT_CONFIRMED: "payment_confirmed_at",
    Job.STATUS_DISPUTED: "disputed_at",
    Job.STATUS_CANCELLED: "cancelled_at",
}

CONFIRMING_LEVELS = ("cryptographic", "verified_manual")


@dataclass
class Transition:
    job: Job
    event: str
    from_status: str
    to_status: str


class JobLifecycle:

    def lock(self, job_id: int) -> Job:
        """À appeler dans transaction.atomic()."""
        try:
            return Job.objects.select_for_update().get(pk=job_id)
        except Job.DoesNotExist:
            raise errors.NotFoundError(f"Job with ID {job_id} not found", "JOB_NOT_FOUND")

    def allowed_events(self, job: Job) -> list:
        return [event for (status, event) in TRANSITIONS if status == job.status]

    def require(self, job: Job, event: str) -> str:
        target = TRANSITIONS.get((job.status, event))
        if target is None:
            message, code = INVALID_STATE_CODES[event]
            raise errors.ConflictError(message, code, details={"status": job.status})
        return target

    def _guard(self, job: Job, event: str, actor, payment) -> None:
        if event == EVENT_ACCEPT:
            if job.runner_id is not None:
                raise errors.ConflictError("Job already has a runner", "JOB_NOT_AVAILABLE")
            if actor is None or actor.pk == job.client_id:
                raise errors.ConflictError("Client cannot accept their own job", "JOB_NOT_AVAILABLE")
        elif event in (EVENT_START, EVENT_COMPLETE):
            if actor is None or actor.pk != job.runner_id:
                raise errors.ConflictError("You are not assigned to this job", "NOT_ASSIGNED_RUNNER")
        elif event == EVENT_CONFIRM_PAYMENT:
            if payment is None or payment.verification_level not in CONFIRMING_LEVELS:
                raise errors.ConflictError("Payment has not been verified", "PAYMENT_NOT_VERIFIED")
        elif event in (EVENT_DISPUTE, EVENT_CANCEL):
            if not (is_admin(actor) or is_participant(job, actor)):
                raise errors.ConflictError("Only job participants can do this", "NOT_JOB_PARTICIPANT")

    def fire(self, job: Job, event: str, actor=None, payment=None) -> Transition:
        """
        Applique une transition sur un job déjà verrouillé.
        Lève ConflictError si (état, événement) n'est pas dans TRANSITIONS ou si la garde échoue;
        dans ce cas rien n'est écrit.
        """
        target = self.require(job, event)
        self._guard(job, event, actor, payment)

        from_status = job.status
        if target == from_status:
            return Transition(job, event, from_status, target)

        update_fields = ["status", "updated_at"]
        job.status = target
        if event == EVENT_ACCEPT:
            job.runner = actor
            update_fields.append("runner")
        ts_field = TIMESTAMP_FIELDS.get(target)
        if ts_field:
            setattr(job, ts_field, timezone.now())
            update_fields.append(ts_field)
        job.save(update_fields=update_fields)

        logger.info("Job %s: %s -> %s (%s)", job.id, from_status, target, event)
        return Transition(job, event, from_status, target)

    def _run(self, job_id: int, event: str, actor) -> Job:
        with transaction.atomic():
            job = self.lock(job_id)
            self.fire(job, event, actor=actor)
        return job

    def accept(self, job_id: int, runner) -> Job:
        return self._run(job_id, EVENT_ACCEPT, runner)

    def start(self, job_id: int, runner) -> Job:
        return self._run(job_id, EVENT_START, runner)

    def complete(self, job_id: int, runner) -> Job:
        return self._run(job_id, EVENT_COMPLETE, runner)

    def cancel(self, job_id: int, actor) -> Job:
        return self._run(job_id, EVENT_CANCEL, actor)

    def dispute(self, job_id: int, actor) -> Job:
        return self._run(job_id, EVENT_DISPUTE, actor)
