from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status


class Role(str, Enum):
    ADMIN = "ADMIN"
    CASHIER = "CASHIER"


@dataclass(frozen=True)
class Principal:
    id: str
    display_name: str
    role: Role
    branch_id: int | None = None


def get_current_principal(request: Request) -> Principal:
    # Installed on request.state by the login layer (admin password or cashier QR/PIN).
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    return principal


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
        return principal

    return _dep


def assert_branch_scope(principal: Principal, target_branch_id: int | None) -> None:
    if principal.role != Role.CASHIER or principal.branch_id is None:
        return
    if principal.branch_id != target_branch_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
