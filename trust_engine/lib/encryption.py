"""
Key management and authenticated encryption for the Trust & Compliance Engine.

KeyManager is the only crypto surface of the engine:
- Per-user, per-purpose content keys derived with PBKDF2-SHA256 from a
  process-wide master secret and a per-record random salt
- AES-256-GCM encryption with the user id bound as associated data
- One-way PBKDF2 hashing in ``salt:hash`` hex format
- Transactional key rotation and key destruction on account erasure

Content keys are never stored. The database only holds the salt and a
PBKDF2 verification hash of each key, so a database dump alone does not
expose them; the master secret is required to re-derive.

PBKDF2 and AES-GCM run in worker threads (asyncio.to_thread) so the event
loop is never blocked by key derivation.

Dependencies:
- cryptography (AES-256-GCM, PBKDF2HMAC)

Usage:
    from trust_engine.lib.encryption import KeyManager
    from trust_engine.models import KeyPurpose

    keys = KeyManager(session_factory, master_key)
    payload = await keys.encrypt("answer text", user_id, KeyPurpose.TRANSCRIPTION)
    text = await keys.decrypt(payload, user_id, KeyPurpose.TRANSCRIPTION)
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy import delete, select
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trust_engine.infra.monitoring import track_crypto_operation
from trust_engine.lib.exceptions import (
    ConfigurationError,
    CryptoOperationError,
    IntegrityError,
    StorageError,
)
from trust_engine.lib.security import hash_uid
from trust_engine.models.encryption_key import EncryptionKeyRecord, KeyPurpose

logger = logging.getLogger(__name__)

KEY_SIZE = 32  # AES-256
SALT_SIZE = 16
IV_SIZE = 16
TAG_SIZE = 16
KDF_ITERATIONS = 100_000
HASH_DIGEST_SIZE = 64
ALGORITHM = "aes-256-gcm"
MAX_CACHED_KEYS = 1024


# =============================================================================
# Encrypted Payload
# =============================================================================


@dataclass(frozen=True)
class EncryptedPayload:
    """
    AES-256-GCM output, hex encoded.

    Attributes:
        ciphertext: Encrypted bytes without the tag
        iv: 128-bit initialisation vector
        auth_tag: 128-bit GCM authentication tag
    """

    ciphertext: str
    iv: str
    auth_tag: str

    def to_dict(self) -> dict[str, str]:
        return {"ciphertext": self.ciphertext, "iv": self.iv, "authTag": self.auth_tag}

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> EncryptedPayload:
        try:
            return cls(ciphertext=data["ciphertext"], iv=data["iv"], auth_tag=data["authTag"])
        except KeyError as e:
            raise CryptoOperationError(f"Encrypted payload missing field {e}") from e


# =============================================================================
# Key Manager
# =============================================================================


class KeyManager:
    """
    Per-user key lifecycle and authenticated encryption.

    Key records are upserted on (user_id, purpose). Derived keys are cached
    in memory keyed by (user_id, purpose, salt), so a rotation (new salt)
    never serves a stale key.

    Attributes:
        _session_factory: Async session factory for key records.
        _master_key: 32-byte process-wide master secret.
        _iterations: PBKDF2 iteration count.
    """

    PURPOSES: tuple[KeyPurpose, ...] = (
        KeyPurpose.AUDIO,
        KeyPurpose.TRANSCRIPTION,
        KeyPurpose.PROFILE,
    )

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        master_key: bytes,
        iterations: int = KDF_ITERATIONS,
    ) -> None:
        if len(master_key) != KEY_SIZE:
            raise ConfigurationError(f"Master key must be {KEY_SIZE} bytes, got {len(master_key)}")
        self._session_factory = session_factory
        self._master_key = master_key
        self._iterations = iterations
        self._key_cache: dict[tuple[str, str, str], bytes] = {}

    # -------------------------------------------------------------------------
    # Derivation
    # -------------------------------------------------------------------------

    def _pbkdf2(self, material: bytes, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(material)

    def _derive_with_hash(self, user_id: str, purpose: str, salt: bytes) -> tuple[bytes, str]:
        """Derive the content key and its verification hash (runs in a worker thread)."""
        material = self._master_key + f"{user_id}:{purpose}".encode()
        key = self._pbkdf2(material, salt)
        return key, self._pbkdf2(key, salt).hex()

    def _remember(self, user_id: str, purpose: str, salt_hex: str, key: bytes) -> None:
        if len(self._key_cache) >= MAX_CACHED_KEYS:
            self._key_cache.pop(next(iter(self._key_cache)))
        self._key_cache[(user_id, purpose, salt_hex)] = key

    def forget_user(self, user_id: str) -> None:
        """Drop every cached key of a user."""
        for cache_key in [k for k in self._key_cache if k[0] == user_id]:
            del self._key_cache[cache_key]

    async def _rederive(self, record: EncryptionKeyRecord) -> bytes:
        cache_key = (record.user_id, record.purpose, record.salt)
        cached = self._key_cache.get(cache_key)
        if cached is not None:
            return cached

        with track_crypto_operation("derive"):
            try:
                salt = bytes.fromhex(record.salt)
                key, key_hash = await asyncio.to_thread(
                    self._derive_with_hash, record.user_id, record.purpose, salt
                )
            except ValueError as e:
                logger.error(
                    "Corrupt key record for user_hash=%s purpose=%s: %s",
                    hash_uid(record.user_id), record.purpose, e,
                )
                raise CryptoOperationError("Key derivation failed") from e

        if not hmac.compare_digest(key_hash, record.key_hash):
            logger.error(
                "Key verification failed for user_hash=%s purpose=%s (master key changed?)",
                hash_uid(record.user_id), record.purpose,
            )
            raise CryptoOperationError("Key verification failed")

        self._remember(record.user_id, record.purpose, record.salt, key)
        return key

    async def _active_record(
        self, session: AsyncSession, user_id: str, purpose: KeyPurpose
    ) -> EncryptionKeyRecord | None:
        stmt = select(EncryptionKeyRecord).where(
            EncryptionKeyRecord.user_id == user_id,
            EncryptionKeyRecord.purpose == purpose.value,
            EncryptionKeyRecord.is_active.is_(True),
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _upsert_key(self, session: AsyncSession, user_id: str, purpose: KeyPurpose) -> bytes:
        """Draw a fresh salt, derive the key and upsert its record inside ``session``."""
        salt = secrets.token_bytes(SALT_SIZE)
        with track_crypto_operation("generate"):
            key, key_hash = await asyncio.to_thread(
                self._derive_with_hash, user_id, purpose.value, salt
            )

        stmt = select(EncryptionKeyRecord).where(
            EncryptionKeyRecord.user_id == user_id,
            EncryptionKeyRecord.purpose == purpose.value,
        )
        record = (await session.execute(stmt)).scalar_one_or_none()
        if record is None:
            session.add(
                EncryptionKeyRecord(
                    user_id=user_id,
                    purpose=purpose.value,
                    key_hash=key_hash,
                    salt=salt.hex(),
                    algorithm=ALGORITHM,
                    is_active=True,
                )
            )
        else:
            record.key_hash = key_hash
            record.salt = salt.hex()
            record.algorithm = ALGORITHM
            record.is_active = True
        await session.flush()

        self._remember(user_id, purpose.value, salt.hex(), key)
        return key

    # -------------------------------------------------------------------------
    # Key Lifecycle
    # -------------------------------------------------------------------------

    async def generate_key(self, user_id: str, purpose: KeyPurpose | str) -> bytes:
        """
        Generate (or replace) the key for ``(user_id, purpose)``.

        Args:
            user_id: Owner of the key
            purpose: KeyPurpose the key protects

        Returns:
            The 32-byte content key

        Raises:
            CryptoOperationError: Key derivation failed
            StorageError: The key record could not be persisted
        """
        purpose = KeyPurpose(purpose)
        try:
            async with self._session_factory() as session, session.begin():
                key = await self._upsert_key(session, user_id, purpose)
        except sa_exc.IntegrityError:
            # A concurrent first use inserted the record; use the winner's salt.
            async with self._session_factory() as session:
                record = await self._active_record(session, user_id, purpose)
            if record is None:
                raise CryptoOperationError("Key generation failed") from None
            return await self._rederive(record)
        except sa_exc.SQLAlchemyError as e:
            logger.error("Key record write failed for user_hash=%s: %s", hash_uid(user_id), e)
            raise StorageError("Key record write failed") from e

        logger.info("Generated %s key for user_hash=%s", purpose.value, hash_uid(user_id))
        return key

    async def get_key(self, user_id: str, purpose: KeyPurpose | str) -> bytes:
        """Return the active key, generating it on first use."""
        purpose = KeyPurpose(purpose)
        try:
            async with self._session_factory() as session:
                record = await self._active_record(session, user_id, purpose)
        except sa_exc.SQLAlchemyError as e:
            logger.error("Key record read failed for user_hash=%s: %s", hash_uid(user_id), e)
            raise StorageError("Key record read failed") from e

        if record is None:
            return await self.generate_key(user_id, purpose)
        return await self._rederive(record)

    async def rotate_keys(self, user_id: str) -> list[KeyPurpose]:
        """
        Rotate every purpose key of a user in one transaction.

        Each record is deactivated and then replaced with a key derived from
        a fresh salt. If anything fails the transaction rolls back and the
        previous keys stay active, so the user never ends up without one.

        Note:
            Data encrypted under the old keys must be re-encrypted by its
            owner before rotation; old keys are not retained.

        Returns:
            The rotated purposes
        """
        try:
            async with self._session_factory() as session, session.begin():
                for purpose in self.PURPOSES:
                    record = await self._active_record(session, user_id, purpose)
                    if record is not None:
                        record.is_active = False
                        await session.flush()
                    await self._upsert_key(session, user_id, purpose)
        except sa_exc.SQLAlchemyError as e:
            logger.error("Key rotation failed for user_hash=%s: %s", hash_uid(user_id), e)
            raise StorageError("Key rotation failed") from e

        logger.info("Rotated all keys for user_hash=%s", hash_uid(user_id))
        return list(self.PURPOSES)

    async def destroy_keys(self, user_id: str) -> int:
        """
        Delete all key records of a user (full account erasure only).

        Warning:
            Everything encrypted for this user becomes unrecoverable.

        Returns:
            Number of key records deleted
        """
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    delete(EncryptionKeyRecord)
                    .where(EncryptionKeyRecord.user_id == user_id)
                    .execution_options(synchronize_session=False)
                )
        except sa_exc.SQLAlchemyError as e:
            logger.error("Key destruction failed for user_hash=%s: %s", hash_uid(user_id), e)
            raise StorageError("Key destruction failed") from e
        self.forget_user(user_id)
        return result.rowcount or 0

    # -------------------------------------------------------------------------
    # Authenticated Encryption
    # -------------------------------------------------------------------------

    async def encrypt(
        self, plaintext: str | bytes, user_id: str, purpose: KeyPurpose | str
    ) -> EncryptedPayload:
        """
        Encrypt with AES-256-GCM, binding the ciphertext to ``user_id``.

        Raises:
            CryptoOperationError: Encryption failed (details are only logged)
        """
        key = await self.get_key(user_id, purpose)
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
        iv = secrets.token_bytes(IV_SIZE)

        with track_crypto_operation("encrypt"):
            try:
                sealed = await asyncio.to_thread(AESGCM(key).encrypt, iv, data, user_id.encode())
            except Exception as e:
                logger.error("Encryption failed for user_hash=%s: %s", hash_uid(user_id), e)
                raise CryptoOperationError("Encryption failed") from e

        return EncryptedPayload(
            ciphertext=sealed[:-TAG_SIZE].hex(),
            iv=iv.hex(),
            auth_tag=sealed[-TAG_SIZE:].hex(),
        )

    async def decrypt_bytes(
        self, payload: EncryptedPayload, user_id: str, purpose: KeyPurpose | str
    ) -> bytes:
        """
        Decrypt a payload produced by :meth:`encrypt`.

        Raises:
            IntegrityError: Tag or associated data (user id) did not verify
            CryptoOperationError: Payload malformed or decryption failed
        """
        key = await self.get_key(user_id, purpose)
        try:
            ciphertext = bytes.fromhex(payload.ciphertext)
            iv = bytes.fromhex(payload.iv)
            tag = bytes.fromhex(payload.auth_tag)
        except ValueError as e:
            raise CryptoOperationError("Malformed encrypted payload") from e

        with track_crypto_operation("decrypt"):
            try:
                return await asyncio.to_thread(
                    AESGCM(key).decrypt, iv, ciphertext + tag, user_id.encode()
                )
            except InvalidTag as e:
                logger.warning("Integrity check failed for user_hash=%s", hash_uid(user_id))
                raise IntegrityError("Authentication tag mismatch") from e
            except Exception as e:
                logger.error("Decryption failed for user_hash=%s: %s", hash_uid(user_id), e)
                raise CryptoOperationError("Decryption failed") from e

    async def decrypt(
        self, payload: EncryptedPayload, user_id: str, purpose: KeyPurpose | str
    ) -> str:
        """Decrypt a text payload."""
        data = await self.decrypt_bytes(payload, user_id, purpose)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CryptoOperationError("Decrypted payload is not text") from e

    async def encrypt_audio(self, audio: bytes, user_id: str) -> EncryptedPayload:
        return await self.encrypt(audio, user_id, KeyPurpose.AUDIO)

    async def decrypt_audio(self, payload: EncryptedPayload, user_id: str) -> bytes:
        return await self.decrypt_bytes(payload, user_id, KeyPurpose.AUDIO)

    # -------------------------------------------------------------------------
    # One-way Hashing
    # -------------------------------------------------------------------------

    def _hash_sync(self, data: str, salt: bytes) -> str:
        digest = hashlib.pbkdf2_hmac(
            "sha256", data.encode("utf-8"), salt, self._iterations, dklen=HASH_DIGEST_SIZE
        )
        return digest.hex()

    async def hash(self, data: str, salt: str | None = None) -> str:
        """
        One-way hash ``data`` as ``"<salt hex>:<hash hex>"``.

        Args:
            data: Value to hash (may be empty)
            salt: Optional hex salt; a random one is drawn otherwise
        """
        salt_bytes = bytes.fromhex(salt) if salt else secrets.token_bytes(HASH_DIGEST_SIZE // 2)
        digest = await asyncio.to_thread(self._hash_sync, data, salt_bytes)
        return f"{salt_bytes.hex()}:{digest}"

    async def verify_hash(self, data: str, hashed: str) -> bool:
        """Constant-time check of ``data`` against a ``salt:hash`` string. Malformed input is False."""
        try:
            salt_hex, expected = hashed.split(":", 1)
            salt = bytes.fromhex(salt_hex)
            if not salt or not expected:
                return False
        except (AttributeError, ValueError):
            return False
        actual = await asyncio.to_thread(self._hash_sync, data, salt)
        return hmac.compare_digest(actual, expected)
