"""Principal resolution and ownership checks."""
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Union
import enum
import logging

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from exceptions import AuthError, ForbiddenError
from models import AccountStatus, ApprovalStatus, Chapter, Manga, User, UserRole, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of an operation."""
    id: int
    role: UserRole
    status: AccountStatus = AccountStatus.ACTIVE
    username: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class Action(str, enum.Enum):
    """Mutations gated by ownership."""
    UPDATE = "update"
    DELETE = "delete"
    ADD_CHAPTER = "add chapters to"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(True)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(False, reason)


class OwnershipGuard:
    """
    Decide whether a principal may mutate an owned resource.

    A manga is owned by its uploader; a chapter by its manga's uploader.
    ADMIN may mutate anything. Account status is enforced earlier, when the
    principal is resolved.
    """

    CREATOR_ROLES = (UserRole.UPLOADER, UserRole.ADMIN)

    @staticmethod
    def owner_id(resource: Union[Manga, Chapter]) -> Optional[int]:
        if isinstance(resource, Chapter):
            return resource.manga.uploader_id if resource.manga is not None else None
        return resource.uploader_id

    def authorize(self, principal: Principal, resource: Union[Manga, Chapter], action: Action) -> Decision:
        if principal.is_admin:
            return Decision.allow()
        owner = self.owner_id(resource)
        if owner is not None and owner == principal.id:
            return Decision.allow()
        kind = "chapter" if isinstance(resource, Chapter) else "manga"
        return Decision.deny(f"Not authorized to {action.value} this {kind}")

    def check(self, principal: Principal, resource: Union[Manga, Chapter], action: Action):
        decision = self.authorize(principal, resource, action)
        if not decision.allowed:
            logger.warning(f"Denied user {principal.id}: {decision.reason}")
            raise ForbiddenError(decision.reason)

    def can_create_manga(self, principal: Principal) -> Decision:
        if principal.role in self.CREATOR_ROLES:
            return Decision.allow()
        return Decision.deny(f"Role {principal.role.value} is not authorized to create manga")

    @staticmethod
    def initial_approval_status(principal: Principal) -> ApprovalStatus:
        return ApprovalStatus.APPROVED if principal.is_admin else ApprovalStatus.PENDING

    def check_admin(self, principal: Principal):
        if not principal.is_admin:
            raise ForbiddenError(f"Role {principal.role.value} is not authorized to moderate manga")


def create_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a signed token for a user id (tests and the CLI)."""
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.jwt_expire_minutes)
    payload = {"sub": str(user_id), "exp": utcnow() + expires_delta}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


class PrincipalResolver:
    """Turn a bearer token into a Principal, rejecting inactive accounts."""

    def __init__(self, db: AsyncSession, secret_key: Optional[str] = None, algorithm: Optional[str] = None):
        self.db = db
        self.secret_key = secret_key or settings.jwt_secret_key
        self.algorithm = algorithm or settings.jwt_algorithm

    async def resolve(self, token: Optional[str]) -> Principal:
        if not token:
            raise AuthError("Not authorized to access this route")

        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
            user_id = int(payload["sub"])
        except ExpiredSignatureError:
            raise AuthError("Token expired. Please login again.")
        except (JWTError, KeyError, TypeError, ValueError):
            raise AuthError("Invalid token. Please login again.")

        user = await self.db.get(User, user_id)
        if user is None:
            raise AuthError("User not found")

        if user.status == AccountStatus.BANNED:
            raise ForbiddenError("Your account has been banned")
        if user.status == AccountStatus.SUSPENDED:
            raise ForbiddenError("Your account has been suspended")

        return Principal(id=user.id, role=user.role, status=user.status, username=user.username)


bearer_scheme = HTTPBearer(auto_error=False)


def _extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials is not None:
        return credentials.credentials
    return request.cookies.get("token")


async def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """FastAPI dependency: authenticated caller or 401/403."""
    return await PrincipalResolver(db).resolve(_extract_token(request, credentials))


async def get_optional_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Optional[Principal]:
    """FastAPI dependency: authenticated caller, or None for anonymous or unusable credentials."""
    token = _extract_token(request, credentials)
    if not token:
        return None
    try:
        return await PrincipalResolver(db).resolve(token)
    except (AuthError, ForbiddenError) as e:
        logger.debug(f"Treating request as anonymous: {e.message}")
        return None


def require_roles(*roles: UserRole):
    """Dependency factory restricting a route to the given roles."""

    async def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in roles:
            raise ForbiddenError(f"Role {principal.role.value} is not authorized to access this route")
        return principal

    return dependency
