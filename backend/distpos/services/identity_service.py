# Overview: Operators, capabilities, step-up credentials and terminal session ids.

"""
Identity and authorization collaborator for the order engine.

WHY: Every settlement gate asks "may this user do X?" by capability code, and
some gates accept a second person's credential (step-up) instead. Both
questions are answered here so settlement never touches password hashes or
role tables directly.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor from BCRYPT_ROUNDS, default 12)
- A step-up credential is accepted only from an active user holding
  APPROVE_OVERRIDES
"""

from __future__ import annotations

import secrets

import bcrypt
from flask import current_app

from ..domain import Identity, StepUpCredential
from ..errors import NotFoundError, PermissionDenied, ValidationError
from ..extensions import db
from ..models import User, UserCapability
from ..permissions import (
    APPROVE_OVERRIDES,
    CAPABILITY_CODES,
    DEFAULT_ROLE_CAPABILITIES,
    VALID_ROLES,
)


OVERRIDE_GRANT = "GRANT"
OVERRIDE_DENY = "DENY"


def new_session_id() -> str:
    """Opaque id for one terminal process; generated once at startup."""
    return f"session-{secrets.token_hex(8)}"


def hash_password(password: str) -> str:
    rounds = current_app.config.get("BCRYPT_ROUNDS", 12)
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    WHY timing-safe: bcrypt.checkpw() prevents timing attacks automatically.
    A malformed stored hash is a failed check, not an error.
    """
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def get_active_user(user_id: int) -> User | None:
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user


def identity_for(user: User, session_id: str) -> Identity:
    return Identity(user_id=user.id, user_name=user.display_name, session_id=session_id)


def create_user(username: str, password: str, *, display_name: str | None = None, role: str = "cashier") -> User:
    username = (username or "").strip()
    if not username:
        raise ValidationError("username is required")
    if not password:
        raise ValidationError("password is required")
    if role not in VALID_ROLES:
        raise ValidationError(f"Invalid role: {role}", details={"valid_roles": sorted(VALID_ROLES)})
    if User.query.filter_by(username=username).first():
        raise ValidationError(f"Username '{username}' already exists")

    user = User(
        username=username,
        display_name=display_name or username,
        password_hash=hash_password(password),
        role=role,
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user


def get_capabilities(user_id: int) -> set[str]:
    """
    All capability codes the user holds.

    Role defaults first, then per-user overrides (GRANT adds, DENY removes).
    Inactive or unknown users hold nothing.
    """
    user = get_active_user(user_id)
    if user is None:
        return set()

    capabilities = set(DEFAULT_ROLE_CAPABILITIES.get(user.role, set()))

    overrides = UserCapability.query.filter_by(user_id=user_id).all()
    for override in overrides:
        if override.override_type == OVERRIDE_GRANT:
            capabilities.add(override.capability)
        elif override.override_type == OVERRIDE_DENY:
            capabilities.discard(override.capability)

    return capabilities


def has_capability(user_id: int, capability: str) -> bool:
    return capability in get_capabilities(user_id)


def require_capability(user_id: int, capability: str, message: str | None = None) -> None:
    """Raise PermissionDenied naming `capability` unless the user holds it."""
    if not has_capability(user_id, capability):
        raise PermissionDenied(capability, message)


def set_capability_override(user_id: int, capability: str, override_type: str) -> UserCapability:
    """
    Grant or deny one capability for one user, replacing any earlier override.
    """
    if capability not in CAPABILITY_CODES:
        raise ValidationError(f"Unknown capability: {capability}")
    if override_type not in {OVERRIDE_GRANT, OVERRIDE_DENY}:
        raise ValidationError("override_type must be GRANT or DENY")
    if db.session.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")

    override = UserCapability.query.filter_by(user_id=user_id, capability=capability).first()
    if override:
        override.override_type = override_type
    else:
        override = UserCapability(user_id=user_id, capability=capability, override_type=override_type)
        db.session.add(override)

    db.session.commit()
    return override


def verify_step_up(credential: StepUpCredential | None) -> User | None:
    """
    Check a supervisor credential typed in at the terminal.

    Returns the approving user when the username belongs to an active user
    holding APPROVE_OVERRIDES and the password matches; None otherwise.
    The reason for a rejection is deliberately not distinguished.
    """
    if credential is None or not credential.username:
        return None

    user = User.query.filter_by(username=credential.username.strip()).first()
    if user is None or not user.is_active:
        return None
    if not verify_password(credential.password, user.password_hash):
        return None
    if not has_capability(user.id, APPROVE_OVERRIDES):
        return None

    current_app.logger.info("Step-up approved by %s", user.username)
    return user
