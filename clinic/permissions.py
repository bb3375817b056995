"""
Custom permission classes for role based access control.
"""
from rest_framework.permissions import BasePermission

STAFF_ROLES = {"ADMIN", "DIETITIAN", "ASSISTANT"}


class IsStaffRole(BasePermission):
    """Allow access to practice staff (admin, dietitian, assistant)."""
    def has_permission(self, request, view) -> bool:  # type: ignore[override]
        user = getattr(request, "user", None)
        return bool(user and user.is_authenticated and getattr(user, "role", None) in STAFF_ROLES)


class IsAdminRole(BasePermission):
    """Allow access only to users with the ADMIN role."""
    def has_permission(self, request, view) -> bool:  # type: ignore[override]
        user = getattr(request, "user", None)
        return bool(user and user.is_authenticated and getattr(user, "role", None) == "ADMIN")


class IsPatientRole(BasePermission):
    """Allow access only to patient portal accounts."""
    def has_permission(self, request, view) -> bool:  # type: ignore[override]
        user = getattr(request, "user", None)
        return bool(user and user.is_authenticated and getattr(user, "role", None) == "PATIENT")
