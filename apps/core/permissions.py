from rest_framework.permissions import BasePermission


class HasAllRoles(BasePermission):
    """Allow only if user has ALL role names listed in view.required_roles (string or list)."""

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False
        # Support method-specific role requirements
        roles = None
        by_method = getattr(view, "required_roles_by_method", None)
        if by_method and isinstance(by_method, dict):
            roles = by_method.get(request.method.upper())
        if roles is None:
            roles = getattr(view, "required_roles", None)
        if not roles:
            return True
        if isinstance(roles, str):
            roles = [roles]
        roles = [str(r) for r in roles]
        user_roles = getattr(request.user, "custom_roles", None)
        if user_roles is None:
            return False
        names = set(user_roles.values_list("name", flat=True))
        return all(r in names for r in roles)
