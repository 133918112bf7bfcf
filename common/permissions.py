import logging

from rest_framework.permissions import BasePermission

from core.models import RolePermission

logger = logging.getLogger("security.authorization")

VIEW = "can_view"
CREATE = "can_create"
EDIT = "can_edit"
DELETE = "can_delete"

PAGES = (
    "categories",
    "suppliers",
    "products",
    "purchases",
    "purchase_returns",
    "customers",
    "sales",
    "sales_returns",
    "exchanges",
    "services",
    "users",
    "roles",
    "audit_logs",
)

ACTION_FLAG_MAP = {
    "list": VIEW,
    "retrieve": VIEW,
    "create": CREATE,
    "update": EDIT,
    "partial_update": EDIT,
    "destroy": DELETE,
}

METHOD_FLAG_MAP = {
    "get": VIEW,
    "head": VIEW,
    "options": VIEW,
    "post": CREATE,
    "put": EDIT,
    "patch": EDIT,
    "delete": DELETE,
}


def page_permission_name(page):
    return f"page_{page}"


def _override_pages(user):
    overrides = getattr(user, "permission_overrides", None) or {}
    if not isinstance(overrides, dict):
        return set()
    return set(overrides.get("pageAccess") or [])


def user_has_page_permission(user, page, flag=VIEW):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    if flag == VIEW and page in _override_pages(user):
        return True
    if not getattr(user, "role_id", None):
        return False
    return RolePermission.objects.filter(
        role_id=user.role_id,
        permission__name=page_permission_name(page),
        **{flag: True},
    ).exists()


def effective_permissions(user):
    """Flatten a user's role matrix plus overrides into ``{page: {flag: bool}}``."""
    matrix = {}
    if getattr(user, "role_id", None):
        rows = RolePermission.objects.filter(role_id=user.role_id).select_related("permission")
        for row in rows:
            page = row.permission.name.removeprefix("page_")
            matrix[page] = {
                VIEW: row.can_view,
                CREATE: row.can_create,
                EDIT: row.can_edit,
                DELETE: row.can_delete,
            }
    for page in _override_pages(user):
        matrix.setdefault(page, {VIEW: False, CREATE: False, EDIT: False, DELETE: False})[VIEW] = True
    return matrix


class PagePermission(BasePermission):
    """Checks the role permission matrix for the view's ``permission_page``."""

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        page = getattr(view, "permission_page", None)
        if page is None:
            return True

        action_key = getattr(view, "action", None) or request.method.lower()
        flag = getattr(view, "permission_action_map", {}).get(action_key)
        if flag is None:
            flag = ACTION_FLAG_MAP.get(action_key) or METHOD_FLAG_MAP.get(request.method.lower(), VIEW)

        allowed = user_has_page_permission(request.user, page, flag)
        if not allowed:
            logger.warning(
                "permission_denied page=%s flag=%s user=%s role=%s method=%s path=%s view=%s action=%s",
                page,
                flag,
                getattr(request.user, "username", "anonymous"),
                getattr(request.user, "role_id", None),
                request.method,
                request.path,
                view.__class__.__name__,
                action_key,
            )
        return allowed
