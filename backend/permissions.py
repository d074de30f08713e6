"""
Role and relationship checks for every guarded action.

Handlers ask ``is_permitted(role, caller_id, action, resource)``; the
resource is the owning user of whatever is being acted on (pass owner,
tracked student) when the rule depends on a relationship.
"""
from typing import Optional

from errors import AuthorizationError
from models import Role, User

ROLE_RULES = {
    "create_pass": {Role.STUDENT, Role.WARDEN, Role.ADMIN},
    "create_pass_for_other": {Role.WARDEN, Role.ADMIN},
    "approve_warden": {Role.WARDEN, Role.ADMIN},
    "scan_pass": {Role.GUARD, Role.WARDEN, Role.ADMIN},
    "list_warden": {Role.WARDEN, Role.ADMIN},
    "list_parent": {Role.PARENT, Role.ADMIN},
    "link_student": {Role.PARENT},
    "list_users": {Role.ADMIN},
    "view_violations": {Role.WARDEN, Role.ADMIN},
    "resolve_sos": {Role.WARDEN, Role.ADMIN},
    "view_sos": set(Role),
    "view_pass": set(Role),
}

# Actions where staff may act on anyone, the owner on themself and a
# parent on their linked child.
RELATIONSHIP_RULES = {
    "view_user_passes": {"staff": {Role.WARDEN, Role.ADMIN}, "self": True, "parent": True},
    "track_student": {"staff": {Role.WARDEN, Role.ADMIN}, "self": True, "parent": True},
    "raise_sos": {"staff": {Role.WARDEN, Role.ADMIN}, "self": True, "parent": False},
    "approve_parent": {"staff": set(), "self": False, "parent": True},
    "reject_pass": {"staff": {Role.WARDEN, Role.ADMIN}, "self": False, "parent": True},
    "view_user": {"staff": {Role.ADMIN}, "self": True, "parent": False},
}


def _is_linked_parent(role: Role, caller_id: str, resource: Optional[User]) -> bool:
    return (
        role == Role.PARENT
        and resource is not None
        and resource.parent_id is not None
        and resource.parent_id == caller_id
    )


def is_permitted(role, caller_id: str, action: str, resource: Optional[User] = None) -> bool:
    try:
        role = Role(role)
    except ValueError:
        return False

    if action in ROLE_RULES:
        return role in ROLE_RULES[action]

    rule = RELATIONSHIP_RULES.get(action)
    if rule is None:
        return False
    if role in rule["staff"]:
        return True
    if rule["self"] and resource is not None and resource.id == caller_id:
        return True
    if rule["parent"] and _is_linked_parent(role, caller_id, resource):
        return True
    return False


def require(role, caller_id: str, action: str, resource: Optional[User] = None, message: str = "Forbidden"):
    if not is_permitted(role, caller_id, action, resource):
        raise AuthorizationError(message)
