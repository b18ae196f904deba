"""Vault: encrypted, content-addressed storage of provider secrets.

The vault holds the master key in memory between unlock() and lock(). The
plaintext of a secret only exists inside get_decrypted_secret() or the
decrypted() scope; KeyRecords carry ciphertext, nonce and fingerprint.

Example:
    ```python
    vault = Vault(state_store=store, observability_manager=obs, key_locks=locks)
    await vault.unlock("correct horse battery staple")

    record = await vault.add_key("openai", "sk-...", label="personal", priority="high")

    async with vault.decrypted(record.id) as secret:
        await adapter.complete(secret, request)
    ```
"""

import asyncio
import json
import uuid
from base64 import b64decode, b64encode
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from llmkeymanager.domain.components.key_locks import KeyLockRegistry
from llmkeymanager.domain.interfaces.observability_manager import ObservabilityManager
from llmkeymanager.domain.interfaces.state_store import StateStore
from llmkeymanager.domain.models.key_record import KeyPriority, KeyRecord, KeyVerificationStatus
from llmkeymanager.infrastructure.utils.encryption import (
    EncryptionError,
    EncryptionService,
    decode_master_key,
    derive_key,
    fingerprint,
    generate_salt,
    load_or_create_key_file,
)
from llmkeymanager.infrastructure.utils.validation import (
    ValidationError,
    validate_label,
    validate_metadata_patch,
    validate_priority,
    validate_provider_id,
    validate_secret,
)

VAULT_META_SALT = "kdf_salt"
VAULT_META_VERIFIER = "verifier"
VERIFIER_PLAINTEXT = "llmkeymanager-vault-verifier"
VERIFIER_ASSOCIATED_DATA = b"vault-verifier"
EXPORT_FORMAT_VERSION = 1

LATENCY_SMOOTHING = 0.2


class VaultError(Exception):
    """Base class of vault errors. Vault errors surface directly to callers."""

    pass


class DuplicateKeyError(VaultError):
    """Raised when a secret is already stored under a non-revoked record."""

    def __init__(self, existing_key_id: str, existing_label: str) -> None:
        self.existing_key_id = existing_key_id
        self.existing_label = existing_label
        label = f" '{existing_label}'" if existing_label else ""
        super().__init__(f"This key is already stored as{label} ({existing_key_id})")


class LockedVaultError(VaultError):
    """Raised when a secret operation is attempted before unlock()."""

    pass


class UnlockError(VaultError):
    """Raised when the master key cannot be derived, loaded or verified."""

    pass


class CorruptKeyError(VaultError):
    """Raised when a stored ciphertext fails authentication."""

    def __init__(self, key_id: str, message: str | None = None) -> None:
        self.key_id = key_id
        super().__init__(message or f"Stored secret for key {key_id} is corrupt")


class NotFoundError(VaultError):
    """Raised when a key id does not exist."""

    pass


class Vault:
    """Encrypted key vault.

    Secrets are encrypted with AES-256-GCM under a vault-wide master key.
    The key id is bound to each ciphertext as associated data. The master
    key comes from a passphrase (PBKDF2, salt persisted in the store) or
    from a platform-held key (environment value or key file).
    """

    def __init__(
        self,
        state_store: StateStore,
        observability_manager: ObservabilityManager,
        key_locks: KeyLockRegistry,
        kdf_iterations: int = 600_000,
        master_key: str | None = None,
        master_key_file: str | Path | None = None,
    ) -> None:
        """Initialize Vault in the locked state.

        Args:
            state_store: StateStore for key records and vault metadata.
            observability_manager: ObservabilityManager for events and logs.
            key_locks: Shared per-key lock registry.
            kdf_iterations: PBKDF2 iterations for passphrase unlock.
            master_key: Base64 platform key used when unlocking without passphrase.
            master_key_file: Key file used when unlocking without passphrase and
                no master_key is given. Created on first use.
        """
        self._state_store = state_store
        self._observability = observability_manager
        self._key_locks = key_locks
        self._kdf_iterations = kdf_iterations
        self._platform_key = master_key
        self._master_key_file = master_key_file
        self._cipher: EncryptionService | None = None
        self._unlock_lock = asyncio.Lock()
        self._add_lock = asyncio.Lock()

    @property
    def is_unlocked(self) -> bool:
        return self._cipher is not None

    def _require_unlocked(self) -> EncryptionService:
        if self._cipher is None:
            raise LockedVaultError("Vault is locked; call unlock() first")
        return self._cipher

    async def unlock(self, passphrase: str | None = None) -> None:
        """Derive or load the master key. No-op if already unlocked.

        Args:
            passphrase: Passphrase to derive the master key from. If None, the
                platform-held key is used.

        Raises:
            UnlockError: If no key source is available or the key does not
                match the one this vault was created with.
        """
        async with self._unlock_lock:
            if self._cipher is not None:
                return

            if passphrase:
                salt_b64 = await self._state_store.get_vault_meta(VAULT_META_SALT)
                if salt_b64 is None:
                    salt = generate_salt()
                    await self._state_store.set_vault_meta(
                        VAULT_META_SALT, b64encode(salt).decode("ascii")
                    )
                else:
                    salt = b64decode(salt_b64)
                master_key = await asyncio.to_thread(
                    derive_key, passphrase, salt, self._kdf_iterations
                )
                source = "passphrase"
            else:
                master_key = self._load_platform_key()
                source = "platform"

            cipher = EncryptionService(master_key)
            await self._verify_master_key(cipher)
            self._cipher = cipher

        await self._emit("vault_unlocked", {"source": source})

    def _load_platform_key(self) -> bytes:
        try:
            if self._platform_key:
                return decode_master_key(self._platform_key)
            if self._master_key_file:
                return load_or_create_key_file(self._master_key_file)
        except (EncryptionError, OSError) as e:
            raise UnlockError(f"Failed to load platform master key: {e}") from e
        raise UnlockError("No passphrase given and no platform master key configured")

    async def _verify_master_key(self, cipher: EncryptionService) -> None:
        stored = await self._state_store.get_vault_meta(VAULT_META_VERIFIER)
        if stored is None:
            ciphertext, nonce = cipher.encrypt(VERIFIER_PLAINTEXT, VERIFIER_ASSOCIATED_DATA)
            await self._state_store.set_vault_meta(
                VAULT_META_VERIFIER, json.dumps({"ciphertext": ciphertext, "nonce": nonce})
            )
            return
        blob = json.loads(stored)
        try:
            plaintext = cipher.decrypt(blob["ciphertext"], blob["nonce"], VERIFIER_ASSOCIATED_DATA)
        except EncryptionError as e:
            raise UnlockError("Master key does not match this vault") from e
        if plaintext != VERIFIER_PLAINTEXT:
            raise UnlockError("Master key does not match this vault")

    async def lock(self) -> None:
        """Drop the master key. Secrets are inaccessible until the next unlock()."""
        was_unlocked = self._cipher is not None
        self._cipher = None
        if was_unlocked:
            await self._emit("vault_locked", {})

    async def add_key(
        self,
        provider_id: str,
        raw_secret: str,
        label: str = "",
        priority: KeyPriority | str = KeyPriority.Medium,
    ) -> KeyRecord:
        """Encrypt and store a new secret.

        Args:
            provider_id: Provider the key belongs to.
            raw_secret: Plaintext API key. Dropped after encryption.
            label: Human readable label.
            priority: Selection priority (high, medium, low).

        Returns:
            The stored KeyRecord.

        Raises:
            LockedVaultError: If the vault is locked.
            ValidationError: If an argument is invalid.
            DuplicateKeyError: If a non-revoked record holds the same secret.
        """
        cipher = self._require_unlocked()
        provider_id = validate_provider_id(provider_id)
        secret = validate_secret(raw_secret)
        label = validate_label(label)
        priority = validate_priority(priority)
        digest = fingerprint(secret)

        async with self._add_lock:
            await self._reject_duplicate(digest)
            key_id = str(uuid.uuid4())
            ciphertext, nonce = cipher.encrypt(secret, key_id.encode("utf-8"))
            del secret
            record = KeyRecord(
                id=key_id,
                provider_id=provider_id,
                label=label,
                priority=priority,
                encrypted_secret=ciphertext,
                nonce=nonce,
                fingerprint=digest,
            )
            async with self._key_locks.hold(key_id):
                await self._state_store.save_key(record)

        await self._emit(
            "key_added",
            {"key_id": record.id, "provider_id": provider_id, "label": label},
        )
        return record

    async def _reject_duplicate(self, digest: str, ignore_key_id: str | None = None) -> None:
        for existing in await self._state_store.find_keys_by_fingerprint(digest):
            if existing.is_revoked or existing.id == ignore_key_id:
                continue
            raise DuplicateKeyError(existing.id, existing.label)

    async def get_key(self, key_id: str) -> KeyRecord:
        """Return a key record.

        Raises:
            NotFoundError: If the key does not exist.
        """
        record = await self._state_store.get_key(key_id)
        if record is None:
            raise NotFoundError(f"Key not found: {key_id}")
        return record

    async def get_decrypted_secret(self, key_id: str) -> str:
        """Decrypt and return a secret.

        Callers pass the result straight into a provider call and do not
        keep it. Prefer the decrypted() context manager.

        Raises:
            LockedVaultError: If the vault is locked.
            NotFoundError: If the key does not exist.
            CorruptKeyError: If the ciphertext fails authentication. The
                record is marked corrupt and kept.
        """
        cipher = self._require_unlocked()
        record = await self.get_key(key_id)
        if record.is_corrupt:
            raise CorruptKeyError(key_id)
        try:
            return cipher.decrypt(record.encrypted_secret, record.nonce, key_id.encode("utf-8"))
        except EncryptionError as e:
            await self._mark_corrupt(key_id, str(e))
            raise CorruptKeyError(key_id) from e

    @asynccontextmanager
    async def decrypted(self, key_id: str) -> AsyncIterator[str]:
        """Scope a plaintext secret to a block; the reference is dropped on exit."""
        secret = await self.get_decrypted_secret(key_id)
        try:
            yield secret
        finally:
            del secret

    async def _mark_corrupt(self, key_id: str, reason: str) -> None:
        async with self._key_locks.hold(key_id):
            record = await self._state_store.get_key(key_id)
            if record is None:
                return
            record.is_corrupt = True
            await self._state_store.save_key(record)
        await self._observability.log(
            level="ERROR",
            message="Stored secret failed authentication; key marked corrupt",
            context={"key_id": key_id, "reason": reason},
        )

    async def list_keys(
        self,
        provider_id: str | None = None,
        include_revoked: bool = False,
    ) -> list[KeyRecord]:
        """List key records in insertion order."""
        records = await self._state_store.list_keys(
            provider_id=provider_id.strip().lower() if provider_id else None
        )
        if include_revoked:
            return records
        return [r for r in records if not r.is_revoked]

    async def revoke(self, key_id: str) -> KeyRecord:
        """Mark a key revoked. The record is kept for audit.

        Raises:
            NotFoundError: If the key does not exist.
        """
        async with self._key_locks.hold(key_id):
            record = await self.get_key(key_id)
            record.is_revoked = True
            record.is_enabled = False
            await self._state_store.save_key(record)
        await self._emit("key_revoked", {"key_id": key_id, "provider_id": record.provider_id})
        return record

    async def update_metadata(self, key_id: str, patch: dict[str, Any]) -> KeyRecord:
        """Apply a metadata patch. Ciphertext, nonce and fingerprint are never touched.

        Raises:
            NotFoundError: If the key does not exist.
            ValidationError: If the patch touches a protected field or is invalid.
        """
        patch = validate_metadata_patch(patch)
        async with self._key_locks.hold(key_id):
            record = await self.get_key(key_id)
            try:
                updated = KeyRecord(**{**record.model_dump(), **patch})
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid metadata patch: {e}", field="patch") from e
            await self._state_store.save_key(updated)
        return updated

    async def record_usage(
        self,
        key_id: str,
        latency_ms: float,
        now: datetime | None = None,
    ) -> KeyRecord:
        """Record one successful use of a key.

        Increments usage_count, advances last_used and folds the latency into
        a rolling average (80% history, 20% new sample).
        """
        now = now or datetime.now(timezone.utc)
        async with self._key_locks.hold(key_id):
            record = await self.get_key(key_id)
            if record.last_used is not None and now <= record.last_used:
                now = record.last_used + timedelta(microseconds=1)
            if record.average_latency == 0:
                average = float(latency_ms)
            else:
                average = (1 - LATENCY_SMOOTHING) * record.average_latency + (
                    LATENCY_SMOOTHING * latency_ms
                )
            record.usage_count += 1
            record.last_used = now
            record.average_latency = max(average, 0.0)
            await self._state_store.save_key(record)
        return record

    async def rotate_key(self, key_id: str, new_secret: str) -> KeyRecord:
        """Replace the secret of an existing key.

        The new secret has not been verified, so the verification status and
        retry schedule start over.

        Raises:
            LockedVaultError: If the vault is locked.
            NotFoundError: If the key does not exist.
            DuplicateKeyError: If another non-revoked record holds the new secret.
        """
        cipher = self._require_unlocked()
        secret = validate_secret(new_secret)
        digest = fingerprint(secret)

        async with self._add_lock:
            await self._reject_duplicate(digest, ignore_key_id=key_id)
            async with self._key_locks.hold(key_id):
                record = await self.get_key(key_id)
                ciphertext, nonce = cipher.encrypt(secret, key_id.encode("utf-8"))
                del secret
                record.encrypted_secret = ciphertext
                record.nonce = nonce
                record.fingerprint = digest
                record.is_corrupt = False
                record.is_revoked = False
                record.verification_status = KeyVerificationStatus.Untested
                record.next_retry_at = None
                record.retry_after = None
                record.last_verified_at = None
                await self._state_store.save_key(record)

        await self._emit("key_rotated", {"key_id": key_id, "provider_id": record.provider_id})
        return record

    async def delete_key(self, key_id: str) -> None:
        """Physically delete a key with its model metadata and quota.

        Raises:
            NotFoundError: If the key does not exist.
        """
        async with self._key_locks.hold(key_id):
            record = await self.get_key(key_id)
            await self._state_store.delete_model_metadata(key_id)
            await self._state_store.delete_quota(key_id)
            await self._state_store.delete_key(key_id)
        self._key_locks.discard(key_id)
        await self._emit("key_deleted", {"key_id": key_id, "provider_id": record.provider_id})

    async def export_vault(self) -> str:
        """Export all key records as JSON. Secrets stay encrypted."""
        records = await self._state_store.list_keys()
        return json.dumps(
            {
                "version": EXPORT_FORMAT_VERSION,
                "salt": await self._state_store.get_vault_meta(VAULT_META_SALT),
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "keys": [r.model_dump(mode="json") for r in records],
            }
        )

    async def import_vault(self, payload: str) -> int:
        """Import key records exported by export_vault().

        Records whose id or fingerprint already exists are skipped. Every
        imported ciphertext must decrypt under the current master key.

        Returns:
            Number of records imported.

        Raises:
            LockedVaultError: If the vault is locked.
            ValidationError: If the payload is malformed.
            CorruptKeyError: If an imported secret does not decrypt.
        """
        cipher = self._require_unlocked()
        try:
            data = json.loads(payload)
            if data.get("version") != EXPORT_FORMAT_VERSION:
                raise ValidationError(
                    f"Unsupported export version: {data.get('version')}", field="version"
                )
            records = [KeyRecord(**item) for item in data.get("keys", [])]
        except (json.JSONDecodeError, AttributeError, TypeError, PydanticValidationError) as e:
            raise ValidationError(f"Invalid vault export: {e}", field="payload") from e

        for record in records:
            try:
                cipher.decrypt(record.encrypted_secret, record.nonce, record.id.encode("utf-8"))
            except EncryptionError as e:
                raise CorruptKeyError(
                    record.id, f"Imported key {record.id} does not decrypt with this vault's key"
                ) from e

        imported = 0
        async with self._add_lock:
            for record in records:
                if await self._state_store.get_key(record.id) is not None:
                    continue
                if await self._state_store.find_keys_by_fingerprint(record.fingerprint):
                    continue
                async with self._key_locks.hold(record.id):
                    await self._state_store.save_key(record)
                imported += 1

        await self._emit("vault_imported", {"imported": imported, "total": len(records)})
        return imported

    async def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self._observability.emit_event(
                event_type=event_type,
                payload=payload,
                metadata={"timestamp": datetime.now(timezone.utc).isoformat()},
            )
        except Exception as e:
            # Log error but don't fail the vault operation if event emission fails
            await self._observability.log(
                level="WARNING",
                message=f"Failed to emit {event_type} event: {e}",
                context=payload,
            )
