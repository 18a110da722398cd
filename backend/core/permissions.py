from rest_framework.permissions import BasePermission, SAFE_METHODS


class IsAdminRole(BasePermission):
    """Allows access only to users with the admin role (or superusers)"""
    message = 'Admin role required.'

    def has_permission(self, request, view):
        user = request.user
        return bool(user and user.is_authenticated and user.is_admin_role)


class IsManagerOrAdmin(BasePermission):
    """Allows access only to admins and managers"""
    message = 'Admin or Manager role required.'

    def has_permission(self, request, view):
        user = request.user
        return bool(user and user.is_authenticated and user.can_manage)


class IsManagerOrAdminForWrites(BasePermission):
    """Read access for any authenticated user, writes for admins and managers"""
    message = 'Admin or Manager role required.'

    def has_permission(self, request, view):
        user = request.user
        if not (user and user.is_authenticated):
            return False
        if request.method in SAFE_METHODS:
            return True
        return user.can_manage
