# auth.py
# Credential -> Principal resolution and the role/permission table.
#
# Credentials are opaque bearer tokens. Only their SHA-256 digest is stored,
# so resolution is a single indexed lookup.

import hashlib
import secrets

from sqlalchemy import select

from opsdesk.errors import AuthenticationError
from opsdesk.models import Principal
from opsdesk.store import SessionFactory, User


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------

VIEW_LEADS = "VIEW_LEADS"
MANAGE_LEADS = "MANAGE_LEADS"
VIEW_QUOTATIONS = "VIEW_QUOTATIONS"
MANAGE_QUOTATIONS = "MANAGE_QUOTATIONS"
VIEW_INVOICES = "VIEW_INVOICES"
MANAGE_INVOICES = "MANAGE_INVOICES"
MANAGE_ORDERS = "MANAGE_ORDERS"
VIEW_PROJECTS = "VIEW_PROJECTS"
MANAGE_PROJECTS = "MANAGE_PROJECTS"
VIEW_FINANCIAL_REPORTS = "VIEW_FINANCIAL_REPORTS"
AI_AGENT = "AI_AGENT"

ALL_PERMISSIONS = frozenset(
    {
        VIEW_LEADS,
        MANAGE_LEADS,
        VIEW_QUOTATIONS,
        MANAGE_QUOTATIONS,
        VIEW_INVOICES,
        MANAGE_INVOICES,
        MANAGE_ORDERS,
        VIEW_PROJECTS,
        MANAGE_PROJECTS,
        VIEW_FINANCIAL_REPORTS,
        AI_AGENT,
    }
)

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "SENIOR_ADMIN": ALL_PERMISSIONS,
    "JUNIOR_ADMIN": ALL_PERMISSIONS,
    "MANAGER": ALL_PERMISSIONS,
    "SALES_AGENT": frozenset(
        {VIEW_LEADS, MANAGE_LEADS, VIEW_QUOTATIONS, MANAGE_QUOTATIONS, VIEW_PROJECTS, AI_AGENT}
    ),
    "ACCOUNTANT": frozenset(
        {VIEW_LEADS, VIEW_QUOTATIONS, VIEW_INVOICES, MANAGE_INVOICES, VIEW_PROJECTS, VIEW_FINANCIAL_REPORTS, AI_AGENT}
    ),
    "STAFF": frozenset({VIEW_LEADS, VIEW_PROJECTS, MANAGE_ORDERS, AI_AGENT}),
    "ARTISAN": frozenset({VIEW_PROJECTS, MANAGE_ORDERS}),
    # Portal roles reach the agent only through a granted AI_AGENT permission.
    "CONTRACTOR": frozenset({VIEW_QUOTATIONS, MANAGE_QUOTATIONS, VIEW_INVOICES, MANAGE_INVOICES, MANAGE_ORDERS}),
    "PROPERTY_MANAGER": frozenset({VIEW_INVOICES, MANAGE_ORDERS}),
    "CUSTOMER": frozenset(),
}


def permissions_for(role: str) -> frozenset[str]:
    return ROLE_PERMISSIONS.get(role, frozenset())


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def principal_from_user(user: User) -> Principal:
    return Principal(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role,
        permissions=permissions_for(user.role) | frozenset(user.granted_permissions or ()),
    )


class Authenticator:
    """Resolves bearer credentials against the users table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def resolve(self, credential: str) -> Principal:
        if not credential or not credential.strip():
            raise AuthenticationError("Missing credential.")

        digest = hash_token(credential.strip())
        with self._session_factory() as session:
            user = session.scalar(select(User).where(User.api_token_hash == digest))
            if user is None:
                raise AuthenticationError("Invalid or expired credential.")
            return principal_from_user(user)


def register_user(
    session_factory: SessionFactory,
    email: str,
    role: str,
    first_name: str = "",
    last_name: str = "",
    token: str | None = None,
    granted_permissions: tuple[str, ...] = (),
) -> tuple[Principal, str]:
    """Create a user with a fresh bearer token. Returns (principal, token)."""
    token = token or secrets.token_urlsafe(24)
    with session_factory() as session:
        user = User(
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=role,
            api_token_hash=hash_token(token),
            granted_permissions=list(granted_permissions),
        )
        session.add(user)
        session.commit()
        return principal_from_user(user), token
