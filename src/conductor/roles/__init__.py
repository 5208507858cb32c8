from conductor.memory import ROLE_ORDER, Role
from conductor.roles.base import RoleSpec
from conductor.roles.build import BuildRole
from conductor.roles.deploy import DeployRole
from conductor.roles.plan import PlanRole
from conductor.roles.review import ReviewRole

ROLE_CLASSES: dict[Role, type[RoleSpec]] = {
    "PLAN": PlanRole,
    "BUILD": BuildRole,
    "REVIEW": ReviewRole,
    "DEPLOY": DeployRole,
}


def build_roles(models: dict[Role, str] | None = None) -> dict[Role, RoleSpec]:
    models = models or {}
    return {role: ROLE_CLASSES[role](model=models.get(role)) for role in ROLE_ORDER}


def next_role(role: Role) -> Role | None:
    index = ROLE_ORDER.index(role)
    return ROLE_ORDER[index + 1] if index < len(ROLE_ORDER) - 1 else None


def previous_role(role: Role) -> Role | None:
    index = ROLE_ORDER.index(role)
    return ROLE_ORDER[index - 1] if index > 0 else None


__all__ = [
    "BuildRole",
    "DeployRole",
    "PlanRole",
    "ROLE_CLASSES",
    "ReviewRole",
    "RoleSpec",
    "build_roles",
    "next_role",
    "previous_role",
]
