"""Multi-recipient PGP encryption with an isolated, temporary keyring.

One ciphertext per file, addressed to every recipient: any single recipient
key can decrypt it. The keyring lives in a private temporary GnuPG home that
is removed when the Keyring context exits, so imported keys never touch the
host's keyring.
"""

import re
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import gnupg
import structlog

from pgp_export.config import settings
from pgp_export.errors import EncryptionError, KeyImportError

logger = structlog.get_logger()

_BRACKETED_EMAIL = re.compile(r"<([^>]+@[^>]+)>")


def emails_from_uids(uids: Sequence[str]) -> list[str]:
    """E-mail addresses from key user ids ("Name <a@b.c>" or a bare address)."""
    emails = []
    for uid in uids:
        match = _BRACKETED_EMAIL.search(uid)
        if match:
            emails.append(match.group(1))
        elif "@" in uid and "." in uid:
            emails.append(uid.strip())
    return emails


@dataclass(frozen=True)
class RecipientKey:
    """An imported recipient public key."""

    name: str
    fingerprint: str
    emails: tuple[str, ...] = field(default_factory=tuple)
    source: str | None = None

    @property
    def short_fingerprint(self) -> str:
        return self.fingerprint[:16]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "fingerprint": self.fingerprint,
            "emails": list(self.emails),
            "source": self.source,
        }


class Keyring:
    """
    Temporary GnuPG keyring.

    Usage:
        with Keyring() as keyring:
            key = keyring.import_key(material, name="partner")
            MultiRecipientEncryptor(keyring).encrypt(path, [key])
    """

    def __init__(self, gpg_binary: str | None = None) -> None:
        self._gpg_binary = gpg_binary or settings.gpg_binary
        self._home: Path | None = None
        self._gpg: gnupg.GPG | None = None

    def __enter__(self) -> "Keyring":
        self.open()
        return self

    def __exit__(self, *args) -> None:
        self.close()

    @property
    def home(self) -> Path | None:
        return self._home

    @property
    def gpg(self) -> gnupg.GPG:
        if self._gpg is None:
            raise RuntimeError("Keyring is not open")
        return self._gpg

    def open(self) -> None:
        if self._gpg is not None:
            return
        self._home = Path(tempfile.mkdtemp(prefix="pgp_export_gnupg_"))
        try:
            self._gpg = gnupg.GPG(gnupghome=str(self._home), gpgbinary=self._gpg_binary)
        except (OSError, ValueError) as e:
            shutil.rmtree(self._home, ignore_errors=True)
            self._home = None
            raise KeyImportError(
                f"GnuPG initialization failed: {e}",
                details={"gpg_binary": self._gpg_binary},
            ) from e
        logger.debug("keyring_opened", home=str(self._home))

    def close(self) -> None:
        """Remove the keyring directory. Safe to call more than once."""
        if self._home is not None:
            shutil.rmtree(self._home, ignore_errors=True)
            logger.debug("keyring_removed", home=str(self._home))
        self._home = None
        self._gpg = None

    def import_key(self, material: bytes | str, name: str, source: str | None = None) -> RecipientKey:
        """
        Import one public key.

        Raises:
            KeyImportError: If no key could be imported from the material
        """
        result = self.gpg.import_keys(material)
        if not result.count or not result.fingerprints:
            raise KeyImportError(
                f"Failed to import {name} key" + (f" from {source}" if source else ""),
                details={
                    "key": name,
                    "source": source,
                    "status": getattr(result, "stderr", "") or "",
                },
            )

        key_fingerprint = result.fingerprints[0]
        uids: list[str] = []
        for key in self.gpg.list_keys(keys=[key_fingerprint]):
            uids.extend(key.get("uids", []))

        key = RecipientKey(
            name=name,
            fingerprint=key_fingerprint,
            emails=tuple(emails_from_uids(uids)),
            source=source,
        )
        logger.info(
            "recipient_key_imported",
            key=name,
            fingerprint=key.short_fingerprint,
            emails=list(key.emails),
        )
        return key

    def import_key_file(self, path: Path, name: str, source: str | None = None) -> RecipientKey:
        try:
            material = path.read_bytes()
        except OSError as e:
            raise KeyImportError(
                f"Cannot read {name} key file: {e}",
                details={"key": name, "source": source or str(path)},
            ) from e
        return self.import_key(material, name, source or str(path))


class MultiRecipientEncryptor:
    """Encrypts files to every recipient in a single pass."""

    def __init__(self, keyring: Keyring, armor: bool = False) -> None:
        self.keyring = keyring
        self.armor = armor

    def encrypt(
        self,
        plaintext: Path,
        recipients: Sequence[RecipientKey],
        output: Path | None = None,
        shard_id: int | None = None,
    ) -> Path:
        """
        Encrypt a file to all recipients at once.

        Args:
            plaintext: File to encrypt
            recipients: Imported recipient keys (at least one)
            output: Ciphertext path (default: ``<plaintext>.pgp``)
            shard_id: Shard being encrypted, for error reporting

        Raises:
            EncryptionError: No recipients, or GnuPG reported a failure
        """
        if not recipients:
            raise EncryptionError(
                "At least one recipient key is required",
                shard_id=shard_id,
            )

        output = output or plaintext.with_name(plaintext.name + ".pgp")
        fingerprints = [key.fingerprint for key in recipients]

        try:
            with open(plaintext, "rb") as f:
                result = self.keyring.gpg.encrypt_file(
                    f,
                    recipients=fingerprints,
                    always_trust=True,
                    armor=self.armor,
                    output=str(output),
                )
        except OSError as e:
            raise EncryptionError(
                f"Encryption of {plaintext.name} failed: {e}",
                shard_id=shard_id,
                details={"file": plaintext.name},
            ) from e

        if not result.ok or not output.is_file():
            raise EncryptionError(
                f"Encryption of {plaintext.name} failed: {result.status}",
                shard_id=shard_id,
                details={"file": plaintext.name, "status": result.status},
            )

        logger.debug(
            "file_encrypted",
            file=plaintext.name,
            output=output.name,
            recipients=len(fingerprints),
            armor=self.armor,
        )
        return output
