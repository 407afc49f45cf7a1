from rest_framework.permissions import BasePermission


def is_admin(user) -> bool:
    return bool(user and user.is_authenticated and user.is_staff)


def is_participant(job, user) -> bool:
    """Client ou runner assigné du job."""
    if not user or not user.is_authenticated:
        return False
    return user.pk in (job.client_id, job.runner_id)


class JobParticipantPermission(BasePermission):
    """
    Autorise l'accès objet si l'utilisateur est partie prenante du job
    (client, runner assigné) ou admin. Les objets paiement sont résolus via .job.
    """
    def has_object_permission(self, request, view, obj):
        job = getattr(obj, "job", obj)
        return is_admin(request.user) or is_participant(job, request.user)


class JobReadPermission(JobParticipantPermission):
    """Les jobs encore ouverts (requested) sont visibles par tout utilisateur authentifié."""
    def has_object_permission(self, request, view, obj):
        job = getattr(obj, "job", obj)
        if job.status == "requested":
            return True
        return super().has_object_permission(request, view, obj)
