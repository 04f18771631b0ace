from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken

from credkeep.logging import get_logger
from credkeep.storage.errors import DuplicateRecord, MissingReference
from credkeep.storage.models import (
    EmailVerificationToken,
    PasswordResetToken,
    RefreshToken,
    Role,
    User,
    utcnow,
)


class MemoryStore:
    """In-process credential store with a JSON snapshot on disk.

    Every public method takes ``_data_lock`` for its whole body, so multi-step
    sequences such as reset-token consumption are atomic with respect to other
    threads. Users are handed out as copies; callers never mutate stored state.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/credkeep",
        *,
        tfa_encryption_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.password_reset_tokens: Dict[str, PasswordResetToken] = {}
        self.email_verification_tokens: Dict[str, EmailVerificationToken] = {}
        self.roles = {role.value for role in Role}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._tfa_cipher = self._build_tfa_cipher(tfa_encryption_key)

        if self.persist and not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_tfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("TFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material:
            key_path = self.fs_root / ".tfa_key"
            try:
                material = key_path.read_text().strip()
            except FileNotFoundError:
                material = None
            if not material:
                generated = secrets.token_urlsafe(64)
                try:
                    key_path.parent.mkdir(parents=True, exist_ok=True)
                    key_path.write_text(generated)
                    os.chmod(key_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist TFA encryption key") from exc
                material = generated
        return Fernet(self._derive_cipher_key(material))

    def _encrypt_tfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        return self._tfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_tfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        try:
            return self._tfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("tfa_secret_decrypt_failed")
            raise RuntimeError("stored TFA secret cannot be decrypted with the configured key")

    def _public_user(self, user: Optional[User]) -> Optional[User]:
        if user is None:
            return None
        return replace(
            user, roles=set(user.roles), tfa_secret=self._decrypt_tfa_secret(user.tfa_secret)
        )

    # users

    def create_user(
        self,
        email: str,
        password_hash: str,
        password_algo: str = "argon2id",
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        roles: Optional[Iterable[Role]] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise DuplicateRecord("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                password_algo=password_algo,
                first_name=first_name,
                last_name=last_name,
                roles=set(roles) if roles else {Role.USER},
            )
            self.users[user.id] = user
            self._persist_state()
            return self._public_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._public_user(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return self._public_user(user)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if not user.email_verified:
                user.email_verified = True
                self._persist_state()
            return self._public_user(user)

    def set_tfa_state(
        self, user_id: str, *, secret: Optional[str], enabled: bool
    ) -> Optional[User]:
        """Write the TFA secret and flag together; an enabled flag needs a secret."""
        if enabled and not secret:
            raise ValueError("tfa cannot be enabled without a secret")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.tfa_secret = self._encrypt_tfa_secret(secret)
            user.tfa_enabled = enabled
            self._persist_state()
            return self._public_user(user)

    def activate_tfa(self, user_id: str, expected_secret: str) -> Optional[User]:
        """Enable TFA only if the stored secret is still the one that was verified."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or self._decrypt_tfa_secret(user.tfa_secret) != expected_secret:
                return None
            user.tfa_enabled = True
            self._persist_state()
            return self._public_user(user)

    def set_user_roles(self, user_id: str, roles: Iterable[Role]) -> Optional[User]:
        new_roles = set(roles)
        if not new_roles:
            raise ValueError("a user needs at least one role")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles = new_roles
            self._persist_state()
            return self._public_user(user)

    def ensure_roles(self) -> None:
        with self._data_lock:
            self.roles.update(role.value for role in Role)

    # refresh tokens

    def save_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.user_id not in self.users:
                raise MissingReference("user does not exist", {"user_id": record.user_id})
            if record.token in self.refresh_tokens:
                raise DuplicateRecord("refresh token already exists", {"field": "token"})
            self.refresh_tokens[record.token] = replace(record)
            self._persist_state()
            return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def delete_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            removed = self.refresh_tokens.pop(token, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_refresh_tokens_for_user(self, user_id: str) -> int:
        with self._data_lock:
            return self._drop_refresh_tokens(user_id)

    def _drop_refresh_tokens(self, user_id: str) -> int:
        stale = [t for t, rec in self.refresh_tokens.items() if rec.user_id == user_id]
        for token in stale:
            self.refresh_tokens.pop(token, None)
        if stale:
            self._persist_state()
        return len(stale)

    def rotate_refresh_token(self, old_token: str, new_record: RefreshToken) -> bool:
        """Swap ``old_token`` for ``new_record``; False if the old one is already gone."""
        with self._data_lock:
            if old_token not in self.refresh_tokens:
                return False
            if new_record.token in self.refresh_tokens:
                raise DuplicateRecord("refresh token already exists", {"field": "token"})
            del self.refresh_tokens[old_token]
            self.refresh_tokens[new_record.token] = replace(new_record)
            self._persist_state()
            return True

    # single-use tokens

    def save_password_reset_token(self, record: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            if record.user_id not in self.users:
                raise MissingReference("user does not exist", {"user_id": record.user_id})
            if record.token in self.password_reset_tokens:
                raise DuplicateRecord("reset token already exists", {"field": "token"})
            self.password_reset_tokens[record.token] = replace(record)
            self._persist_state()
            return record

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = self.password_reset_tokens.get(token)
            return replace(record) if record else None

    def consume_password_reset_token(
        self,
        token: str,
        password_hash: str,
        password_algo: str = "argon2id",
        *,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        """Mark the token used, store the new hash and revoke refresh tokens.

        Returns None without changing anything when the token is missing,
        already used or expired.
        """
        with self._data_lock:
            record = self.password_reset_tokens.get(token)
            if record is None or record.used or record.is_expired(now):
                return None
            user = self.users.get(record.user_id)
            if user is None:
                return None
            record.used = True
            user.password_hash = password_hash
            user.password_algo = password_algo
            self._drop_refresh_tokens(user.id)
            self._persist_state()
            return self._public_user(user)

    def save_email_verification_token(
        self, record: EmailVerificationToken
    ) -> EmailVerificationToken:
        with self._data_lock:
            if record.user_id not in self.users:
                raise MissingReference("user does not exist", {"user_id": record.user_id})
            if record.token in self.email_verification_tokens:
                raise DuplicateRecord("verification token already exists", {"field": "token"})
            self.email_verification_tokens[record.token] = replace(record)
            self._persist_state()
            return record

    def get_email_verification_token(self, token: str) -> Optional[EmailVerificationToken]:
        with self._data_lock:
            record = self.email_verification_tokens.get(token)
            return replace(record) if record else None

    def purge_expired_tokens(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        with self._data_lock:
            refresh = [t for t, r in self.refresh_tokens.items() if r.is_expired(now)]
            reset = [
                t
                for t, r in self.password_reset_tokens.items()
                if r.used or r.is_expired(now)
            ]
            verification = [
                t for t, r in self.email_verification_tokens.items() if r.is_expired(now)
            ]
            for token in refresh:
                del self.refresh_tokens[token]
            for token in reset:
                del self.password_reset_tokens[token]
            for token in verification:
                del self.email_verification_tokens[token]
            counts = {
                "refresh_tokens": len(refresh),
                "password_reset_tokens": len(reset),
                "email_verification_tokens": len(verification),
            }
            if any(counts.values()):
                self._persist_state()
            return counts

    # persistence

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "roles": sorted(self.roles),
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                {
                    "token": r.token,
                    "user_id": r.user_id,
                    "expiry_date": self._serialize_datetime(r.expiry_date),
                    "created_at": self._serialize_datetime(r.created_at),
                }
                for r in self.refresh_tokens.values()
            ],
            "password_reset_tokens": [
                {
                    "token": r.token,
                    "user_id": r.user_id,
                    "expiry_date": self._serialize_datetime(r.expiry_date),
                    "used": r.used,
                    "created_at": self._serialize_datetime(r.created_at),
                }
                for r in self.password_reset_tokens.values()
            ],
            "email_verification_tokens": [
                {
                    "token": r.token,
                    "user_id": r.user_id,
                    "expiry_date": self._serialize_datetime(r.expiry_date),
                    "created_at": self._serialize_datetime(r.created_at),
                }
                for r in self.email_verification_tokens.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist credential store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.roles.update(data.get("roles", []))
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            r["token"]: RefreshToken(
                token=r["token"],
                user_id=r["user_id"],
                expiry_date=self._deserialize_datetime(r["expiry_date"]),
                created_at=self._deserialize_datetime(r["created_at"]),
            )
            for r in data.get("refresh_tokens", [])
        }
        self.password_reset_tokens = {
            r["token"]: PasswordResetToken(
                token=r["token"],
                user_id=r["user_id"],
                expiry_date=self._deserialize_datetime(r["expiry_date"]),
                used=bool(r.get("used", False)),
                created_at=self._deserialize_datetime(r["created_at"]),
            )
            for r in data.get("password_reset_tokens", [])
        }
        self.email_verification_tokens = {
            r["token"]: EmailVerificationToken(
                token=r["token"],
                user_id=r["user_id"],
                expiry_date=self._deserialize_datetime(r["expiry_date"]),
                created_at=self._deserialize_datetime(r["created_at"]),
            )
            for r in data.get("email_verification_tokens", [])
        }
        return True

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "password_algo": user.password_algo,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email_verified": user.email_verified,
            "tfa_enabled": user.tfa_enabled,
            # already Fernet ciphertext
            "tfa_secret": user.tfa_secret,
            "roles": user.role_names,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            password_algo=data.get("password_algo", "argon2id"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            email_verified=bool(data.get("email_verified", False)),
            tfa_enabled=bool(data.get("tfa_enabled", False)),
            tfa_secret=data.get("tfa_secret"),
            roles={Role(r) for r in data.get("roles", [Role.USER.value])},
            created_at=self._deserialize_datetime(data["created_at"]),
        )
