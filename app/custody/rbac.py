from __future__ import annotations

import logging
from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.custody.db import CustodyStore
from app.custody.models import User

logger = logging.getLogger(__name__)


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return jsonify({"error": {"kind": "unauthenticated", "message": "Login required."}}), 401
        return fn(*args, **kwargs)

    return wrapped


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → 401 (JSON API; no login page to redirect to).
            if not user or not user.is_active:
                return jsonify({"error": {"kind": "unauthenticated", "message": "Login required."}}), 401
            # Authenticated but unauthorized → 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                logger.warning("Forbidden: user_id=%s missing_permission=%s", user.id, permission_key)
                return jsonify({"error": {"kind": "forbidden", "message": f"Missing permission {permission_key}."}}), 403
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def custody_permission_key(operation_kind: str) -> str:
    return f"custody.{operation_kind}"


class RbacAccessGate:
    """
    Authorization verdicts for custody mutations, from the role/permission
    tables. An actor may perform operation X iff one of its roles grants
    `custody.X`.
    """

    def __init__(self, store: CustodyStore):
        self.store = store

    def authorize(self, actor_id: int | None, operation_kind: str, object_code: str) -> bool:
        if actor_id is None:
            return False
        with self.store.read_session() as s:
            user = s.get(User, actor_id)
            allowed = user_has_permission(user, custody_permission_key(operation_kind))
        if not allowed:
            logger.info("Custody authorization denied actor_id=%s op=%s object_code=%s", actor_id, operation_kind, object_code)
        return allowed


class UserDirectory:
    """Actor identity check: an actor exists iff it is an active user."""

    def __init__(self, store: CustodyStore):
        self.store = store

    def exists(self, actor_id: int) -> bool:
        with self.store.read_session() as s:
            user = s.get(User, actor_id)
            return bool(user and user.is_active)
