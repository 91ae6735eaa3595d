"""
Authorization gate and principal resolution.

Principals are passed explicitly into every manager call; nothing here reads
ambient request state. The capability table is the single place that decides
which role may run which operation.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol

from reservation_engine.exceptions import Unauthenticated, Unauthorized

logger = logging.getLogger(__name__)


class Role(enum.Enum):
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"


class Operation(enum.Enum):
    BORROW = "borrow"
    RETURN = "return"
    RENEW = "renew"
    VIEW_LOAN = "view_loan"
    CREATE_ORDER = "create_order"
    CANCEL_ORDER = "cancel_order"
    VIEW_ORDER = "view_order"
    REGISTER_ITEM = "register_item"
    RUN_SWEEP = "run_sweep"


@dataclass(frozen=True)
class Principal:
    principal_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


CAPABILITIES = {
    (Role.CUSTOMER, Operation.BORROW): True,
    (Role.CUSTOMER, Operation.RETURN): True,
    (Role.CUSTOMER, Operation.RENEW): True,
    (Role.CUSTOMER, Operation.VIEW_LOAN): True,
    (Role.CUSTOMER, Operation.CREATE_ORDER): True,
    (Role.CUSTOMER, Operation.CANCEL_ORDER): True,
    (Role.CUSTOMER, Operation.VIEW_ORDER): True,
    (Role.CUSTOMER, Operation.REGISTER_ITEM): False,
    (Role.CUSTOMER, Operation.RUN_SWEEP): False,
}
CAPABILITIES.update({(Role.ADMIN, op): True for op in Operation})


def authorize(principal: Principal, operation: Operation, owner_id: Optional[str] = None) -> None:
    """Raise Unauthorized unless ``principal`` may run ``operation``.

    When ``owner_id`` is given the record belongs to that principal; only the
    owner or an ADMIN may act on it.
    """
    if not CAPABILITIES.get((principal.role, operation), False):
        logger.warning(f"Denied {operation.value} for {principal.principal_id} ({principal.role.value})")
        raise Unauthorized(f"Role {principal.role.value} may not {operation.value}")
    if owner_id is not None and not principal.is_admin and owner_id != principal.principal_id:
        logger.warning(f"Denied {operation.value} on record owned by {owner_id} for {principal.principal_id}")
        raise Unauthorized(f"Principal {principal.principal_id} does not own this record")


class PrincipalResolver(Protocol):
    def resolve(self, credentials: Mapping[str, str]) -> Principal:
        ...


class HeaderPrincipalResolver:
    """Reads the identity an upstream gateway has already authenticated."""

    def __init__(self, id_header: str = "x-principal-id", role_header: str = "x-principal-role"):
        self.id_header = id_header
        self.role_header = role_header

    def resolve(self, credentials: Mapping[str, str]) -> Principal:
        principal_id = credentials.get(self.id_header)
        role_name = credentials.get(self.role_header)
        if not principal_id or not role_name:
            raise Unauthenticated("Missing principal credentials")
        try:
            role = Role(role_name.upper())
        except ValueError:
            raise Unauthenticated(f"Unknown role {role_name}")
        return Principal(principal_id=principal_id, role=role)
