from __future__ import annotations

from typing import Any, Dict, List, Optional

from stagekey.logging import get_logger, mask_pii
from stagekey.service.clock import Clock, RandomSource, SecureRandom, SystemClock
from stagekey.storage.memory import MemoryStore
from stagekey.storage.models import SYSTEM_ACTOR, AuditAction, AuditLogEntry, User

logger = get_logger(__name__)


class AuditLog:
    """Append-only writer for immutable audit facts."""

    def __init__(
        self,
        store: MemoryStore,
        *,
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.random = random_source or SecureRandom()

    def record(
        self,
        action: AuditAction,
        details: str,
        *,
        actor: Optional[User] = None,
        target_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        meta = dict(metadata or {})
        if actor is not None:
            meta.setdefault("actor_username", actor.username)
        entry = AuditLogEntry(
            id=self.random.new_id(),
            timestamp=self.clock.now(),
            actor_id=actor.id if actor else SYSTEM_ACTOR,
            actor_role=actor.role.value if actor else SYSTEM_ACTOR,
            action=action,
            details=details,
            target_id=target_id,
            metadata=meta or None,
        )
        self.store.append_audit(entry)
        logger.info(
            "audit_recorded",
            action=action.value,
            actor_id=entry.actor_id,
            target_id=target_id,
            details=mask_pii(details),
        )
        return entry

    def list(
        self,
        limit: int = 100,
        *,
        action: Optional[AuditAction] = None,
        target_id: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        """Newest entries first."""
        return self.store.list_audit(limit, action=action, target_id=target_id)
