from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from stagekey.logging import get_logger
from stagekey.storage.errors import ConstraintViolation
from stagekey.storage.models import (
    AuditAction,
    AuditLogEntry,
    BootstrapMarker,
    Channel,
    DeliveryLog,
    NotifyStatus,
    RequestStatus,
    Role,
    Session,
    SessionEndReason,
    TokenRequest,
    User,
    UserProfile,
    UserSource,
    UserStatus,
)


class MemoryStore:
    """In-process backing store with optional JSON persistence.

    Every public method runs under one re-entrant lock and works on whole
    records, so a read-modify-write through ``update_user`` or
    ``update_request`` can never interleave with another writer. Records handed
    out are deep copies; mutating them has no effect until written back.
    """

    def __init__(
        self, state_dir: str | None = None, *, max_ended_sessions: int = 10000
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._username_index: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.ended_sessions: "OrderedDict[str, SessionEndReason]" = OrderedDict()
        self.max_ended_sessions = max_ended_sessions
        self.requests: Dict[str, TokenRequest] = {}
        self.audit_logs: List[AuditLogEntry] = []
        self.bootstrap = BootstrapMarker()
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir is not None:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # bootstrap
    def get_bootstrap_marker(self) -> BootstrapMarker:
        with self._data_lock:
            return copy.deepcopy(self.bootstrap)

    def claim_bootstrap(self, master: User, now: datetime) -> BootstrapMarker:
        """Create the sole master admin and set the marker in one step."""
        with self._transaction():
            master_exists = any(u.role == Role.MASTER_ADMIN for u in self.users.values())
            if self.bootstrap.master_ready or master_exists:
                raise ConstraintViolation(
                    "system already bootstrapped", {"reason": "bootstrap_claimed"}
                )
            self._insert_user(master)
            self.bootstrap = BootstrapMarker(
                master_ready=True, created_at=now, master_admin_id=master.id
            )
            return copy.deepcopy(self.bootstrap)

    # users
    def _insert_user(self, user: User) -> None:
        key = user.username_key
        if key in self._username_index:
            raise ConstraintViolation(
                "username already exists", {"reason": "username_taken", "field": "username"}
            )
        stored = copy.deepcopy(user)
        self.users[stored.id] = stored
        self._username_index[key] = stored.id

    def create_user(self, user: User) -> User:
        with self._transaction():
            if user.role == Role.MASTER_ADMIN:
                raise ConstraintViolation(
                    "master admin is created only by bootstrap",
                    {"reason": "bootstrap_claimed"},
                )
            self._insert_user(user)
            return copy.deepcopy(self.users[user.id])

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._username_index.get((username or "").casefold())
            if not user_id:
                return None
            return copy.deepcopy(self.users[user_id])

    def list_users(self) -> List[User]:
        with self._data_lock:
            results = sorted(self.users.values(), key=lambda u: u.created_at)
            return [copy.deepcopy(u) for u in results]

    def update_user(
        self,
        user_id: str,
        mutate: Callable[[User], None],
        *,
        end_sessions: Optional[SessionEndReason] = None,
    ) -> User:
        """Apply ``mutate`` to a copy of the user and write it back atomically.

        With ``end_sessions`` every session of the user is dropped in the same
        critical section and remembered with that reason.
        """
        with self._transaction():
            current = self.users.get(user_id)
            if current is None:
                raise ConstraintViolation("user not found", {"reason": "user_not_found"})
            updated = copy.deepcopy(current)
            mutate(updated)
            if updated.id != current.id:
                raise ConstraintViolation("user id is immutable", {"field": "id"})
            if updated.username_key != current.username_key:
                if updated.username_key in self._username_index:
                    raise ConstraintViolation(
                        "username already exists",
                        {"reason": "username_taken", "field": "username"},
                    )
                self._username_index.pop(current.username_key, None)
                self._username_index[updated.username_key] = user_id
                self._drop_sessions(current.username_key, SessionEndReason.RENAMED)
            self.users[user_id] = updated
            if end_sessions is not None:
                self._drop_sessions(updated.username_key, end_sessions)
            return copy.deepcopy(updated)

    def delete_user(self, user_id: str) -> Optional[User]:
        with self._transaction():
            user = self.users.pop(user_id, None)
            if user is None:
                return None
            self._username_index.pop(user.username_key, None)
            self._drop_sessions(user.username_key, SessionEndReason.DELETED)
            return user

    # sessions
    def _drop_sessions(self, username_key: str, reason: SessionEndReason) -> List[str]:
        stale = [
            sid for sid, sess in self.sessions.items()
            if sess.username.casefold() == username_key
        ]
        for sid in stale:
            self.sessions.pop(sid, None)
            self.ended_sessions[sid] = reason
        while len(self.ended_sessions) > self.max_ended_sessions:
            self.ended_sessions.popitem(last=False)
        return stale

    def replace_user_sessions(
        self, session: Session, *, expected_token_hash: Optional[str] = None
    ) -> List[str]:
        """Install ``session`` as the only live session for its username.

        When ``expected_token_hash`` is given the user must still hold that
        digest and be ACTIVE, so a login cannot outlive a concurrent rotation
        or revocation. Returns the ids of the sessions that were dropped.
        """
        with self._transaction():
            key = session.username.casefold()
            user_id = self._username_index.get(key)
            if user_id is None:
                raise ConstraintViolation("user not found", {"reason": "user_not_found"})
            user = self.users[user_id]
            if expected_token_hash is not None and user.token_hash != expected_token_hash:
                raise ConstraintViolation(
                    "credentials changed", {"reason": "credentials_changed"}
                )
            if user.status != UserStatus.ACTIVE:
                raise ConstraintViolation("user revoked", {"reason": "user_revoked"})
            dropped = self._drop_sessions(key, SessionEndReason.REPLACED)
            self.sessions[session.id] = copy.deepcopy(session)
            return dropped

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.deepcopy(sess) if sess else None

    def get_session_end_reason(self, session_id: str) -> Optional[SessionEndReason]:
        """Why a recently invalidated session ended, if it is still remembered."""
        with self._data_lock:
            return self.ended_sessions.get(session_id)

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            if session_id not in self.sessions:
                return False
            with self._transaction():
                del self.sessions[session_id]
            return True

    def list_sessions(self, username: Optional[str] = None) -> List[Session]:
        with self._data_lock:
            key = username.casefold() if username else None
            return [
                copy.deepcopy(s)
                for s in self.sessions.values()
                if key is None or s.username.casefold() == key
            ]

    # token requests
    def create_request(self, request: TokenRequest) -> TokenRequest:
        with self._transaction():
            if request.id in self.requests:
                raise ConstraintViolation("request id collision", {"field": "id"})
            self.requests[request.id] = copy.deepcopy(request)
            return copy.deepcopy(request)

    def get_request(self, request_id: str) -> Optional[TokenRequest]:
        with self._data_lock:
            req = self.requests.get(request_id)
            return copy.deepcopy(req) if req else None

    def list_requests(self, status: Optional[RequestStatus] = None) -> List[TokenRequest]:
        with self._data_lock:
            results = [
                r for r in self.requests.values() if status is None or r.status == status
            ]
            results.sort(key=lambda r: r.created_at, reverse=True)
            return [copy.deepcopy(r) for r in results]

    def update_request(
        self, request_id: str, mutate: Callable[[TokenRequest], None]
    ) -> TokenRequest:
        with self._transaction():
            current = self.requests.get(request_id)
            if current is None:
                raise ConstraintViolation(
                    "request not found", {"reason": "request_not_found"}
                )
            updated = copy.deepcopy(current)
            mutate(updated)
            if updated.status != current.status and current.status != RequestStatus.PENDING:
                raise ConstraintViolation(
                    "request already processed", {"reason": "request_processed"}
                )
            self.requests[request_id] = updated
            return copy.deepcopy(updated)

    def transition_request(
        self,
        request_id: str,
        status: RequestStatus,
        mutate: Optional[Callable[[TokenRequest], None]] = None,
    ) -> TokenRequest:
        """Move a PENDING request to a terminal status exactly once."""
        with self._transaction():
            current = self.requests.get(request_id)
            if current is None:
                raise ConstraintViolation(
                    "request not found", {"reason": "request_not_found"}
                )
            if current.status != RequestStatus.PENDING:
                raise ConstraintViolation(
                    "request already processed",
                    {"reason": "request_processed", "status": current.status.value},
                )
            updated = copy.deepcopy(current)
            if mutate:
                mutate(updated)
            updated.status = status
            self.requests[request_id] = updated
            return copy.deepcopy(updated)

    def commit_approval(
        self,
        request_id: str,
        user: User,
        mutate: Callable[[TokenRequest], None],
    ) -> Tuple[TokenRequest, User]:
        """Insert the approved user and mark the request APPROVED atomically.

        Either both writes happen or neither does.
        """
        with self._transaction():
            current = self.requests.get(request_id)
            if current is None:
                raise ConstraintViolation(
                    "request not found", {"reason": "request_not_found"}
                )
            if current.status != RequestStatus.PENDING:
                raise ConstraintViolation(
                    "request already processed",
                    {"reason": "request_processed", "status": current.status.value},
                )
            if user.role == Role.MASTER_ADMIN:
                raise ConstraintViolation(
                    "master admin is created only by bootstrap",
                    {"reason": "bootstrap_claimed"},
                )
            self._insert_user(user)
            updated = copy.deepcopy(current)
            mutate(updated)
            updated.status = RequestStatus.APPROVED
            updated.user_id = user.id
            self.requests[request_id] = updated
            return copy.deepcopy(updated), copy.deepcopy(self.users[user.id])

    # audit
    def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._transaction():
            self.audit_logs.append(copy.deepcopy(entry))
            return copy.deepcopy(entry)

    def list_audit(
        self,
        limit: int = 100,
        *,
        action: Optional[AuditAction] = None,
        target_id: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            results = [
                e
                for e in reversed(self.audit_logs)
                if (action is None or e.action == action)
                and (target_id is None or e.target_id == target_id)
            ]
            return [copy.deepcopy(e) for e in results[:limit]]

    # persistence
    @contextmanager
    def _transaction(self) -> Iterator[None]:
        """Hold the lock for one write and persist it, or roll it back.

        Stored records are replaced rather than edited in place, so shallow
        copies of the containers are enough to restore the prior state.
        """
        with self._data_lock:
            snapshot = (
                dict(self.users),
                dict(self._username_index),
                dict(self.sessions),
                OrderedDict(self.ended_sessions),
                dict(self.requests),
                list(self.audit_logs),
                self.bootstrap,
            )
            try:
                yield
                self._persist_state()
            except BaseException:
                (
                    self.users,
                    self._username_index,
                    self.sessions,
                    self.ended_sessions,
                    self.requests,
                    self.audit_logs,
                    self.bootstrap,
                ) = snapshot
                raise

    def _state_path(self) -> Path:
        assert self.state_dir is not None
        return self.state_dir / "stagekey_state.json"

    @staticmethod
    def _jsonable(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, dict):
            return {k: MemoryStore._jsonable(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [MemoryStore._jsonable(v) for v in value]
        return value

    def _serialize(self, record: Any) -> dict:
        return self._jsonable(asdict(record))

    @staticmethod
    def _dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if self.state_dir is None:
            return
        state = {
            "bootstrap": self._serialize(self.bootstrap),
            "users": [self._serialize(u) for u in self.users.values()],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "ended_sessions": {sid: reason.value for sid, reason in self.ended_sessions.items()},
            "requests": [self._serialize(r) for r in self.requests.values()],
            "audit_logs": [self._serialize(e) for e in self.audit_logs],
        }
        path = self._state_path()
        fd, tmp_path = tempfile.mkstemp(dir=str(self.state_dir), prefix=".state_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            Path(tmp_path).unlink(missing_ok=True)
            raise RuntimeError(f"failed to persist state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.bootstrap = self._deserialize_bootstrap(data.get("bootstrap") or {})
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self._username_index = {u.username_key: u.id for u in self.users.values()}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.ended_sessions = OrderedDict(
            (sid, SessionEndReason(reason))
            for sid, reason in (data.get("ended_sessions") or {}).items()
        )
        self.requests = {
            r["id"]: self._deserialize_request(r) for r in data.get("requests", [])
        }
        self.audit_logs = [self._deserialize_audit(e) for e in data.get("audit_logs", [])]
        self.logger.info(
            "store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            requests=len(self.requests),
            audit_entries=len(self.audit_logs),
        )
        return True

    def _deserialize_bootstrap(self, data: dict) -> BootstrapMarker:
        return BootstrapMarker(
            master_ready=bool(data.get("master_ready", False)),
            created_at=self._dt(data.get("created_at")),
            master_admin_id=data.get("master_admin_id"),
        )

    def _deserialize_delivery(self, data: Optional[dict]) -> Optional[DeliveryLog]:
        if not data:
            return None
        return DeliveryLog(
            id=data["id"],
            channel=Channel(data["channel"]),
            status=NotifyStatus(data["status"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            destination=data.get("destination"),
            provider_id=data.get("provider_id"),
            error=data.get("error"),
            attempts=int(data.get("attempts", 1)),
        )

    def _deserialize_user(self, data: dict) -> User:
        profile = data.get("profile") or {}
        return User(
            id=data["id"],
            username=data["username"],
            token_hash=data["token_hash"],
            role=Role(data["role"]),
            status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
            email=data.get("email"),
            phone=data.get("phone"),
            profile=UserProfile(
                source=UserSource(profile.get("source", UserSource.MANUAL_CREATE.value)),
                first_name=profile.get("first_name"),
                last_name=profile.get("last_name"),
                social_handle=profile.get("social_handle"),
                original_request_id=profile.get("original_request_id"),
            ),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            expires_at=self._dt(data.get("expires_at")),
            created_by=data.get("created_by"),
            last_delivery=self._deserialize_delivery(data.get("last_delivery")),
        )

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            username=data["username"],
            role=Role(data["role"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            client=data.get("client"),
            expires_at=self._dt(data.get("expires_at")),
        )

    def _deserialize_request(self, data: dict) -> TokenRequest:
        return TokenRequest(
            id=data["id"],
            first_name=data["first_name"],
            last_name=data["last_name"],
            social_handle=data["social_handle"],
            desired_username=data["desired_username"],
            phone=data["phone"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            status=RequestStatus(data["status"]),
            approved_at=self._dt(data.get("approved_at")),
            rejected_at=self._dt(data.get("rejected_at")),
            processed_by=data.get("processed_by"),
            user_id=data.get("user_id"),
            admin_notify_status=NotifyStatus(data.get("admin_notify_status", "PENDING")),
            admin_notify_error=data.get("admin_notify_error"),
            admin_deliveries=[
                d for d in (
                    self._deserialize_delivery(raw) for raw in data.get("admin_deliveries", [])
                ) if d is not None
            ],
            notify_attempts=int(data.get("notify_attempts", 0)),
            applicant_notify_status=NotifyStatus(
                data.get("applicant_notify_status", "PENDING")
            ),
            applicant_notify_error=data.get("applicant_notify_error"),
            applicant_delivery=self._deserialize_delivery(data.get("applicant_delivery")),
        )

    def _deserialize_audit(self, data: dict) -> AuditLogEntry:
        return AuditLogEntry(
            id=data["id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            actor_id=data["actor_id"],
            actor_role=data["actor_role"],
            action=AuditAction(data["action"]),
            details=data["details"],
            target_id=data.get("target_id"),
            metadata=data.get("metadata"),
        )
