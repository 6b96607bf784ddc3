from rest_framework.permissions import BasePermission

from .models import Client, Loan, Payment


def is_admin(user) -> bool:
    return bool(user and user.is_authenticated and user.is_superuser)


def client_of(obj) -> Client:
    if isinstance(obj, Client):
        return obj
    if isinstance(obj, (Loan, Payment)):
        return obj.client
    raise TypeError(f"No client ownership for {type(obj).__name__}")


def can_access_client(user, client: Client) -> bool:
    return is_admin(user) or client.assigned_staff_id == user.pk


class IsAdmin(BasePermission):
    message = "Access denied"

    def has_permission(self, request, view):
        return is_admin(request.user)


class IsAssignedStaffOrAdmin(BasePermission):
    """Staff may only act on the clients assigned to them."""

    message = "Access denied"

    def has_object_permission(self, request, view, obj):
        return can_access_client(request.user, client_of(obj))
