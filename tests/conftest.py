"""Pytest configuration and fixtures."""

import hashlib
import shutil
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from pgp_export import pipeline
from pgp_export.config import settings
from pgp_export.database import AuditDB, DataStore
from pgp_export.encryption import RecipientKey
from pgp_export.errors import EncryptionError, KeyImportError
from pgp_export.main import app
from pgp_export.query import Query
from pgp_export.stages import Stage

# Test admin API key for authentication
TEST_ADMIN_API_KEY = "test_admin_key_for_testing"

# Fixed run clock: file timestamps become 20240102_030405
FIXED_NOW = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


class RecordingNotifier:
    """Notifier that keeps every notification in memory."""

    def __init__(self):
        self.sent: list[dict] = []

    def notify(self, recipient: str, subject: str, body: str) -> bool:
        self.sent.append({"recipient": recipient, "subject": subject, "body": body})
        return True

    @property
    def subjects(self) -> list[str]:
        return [n["subject"] for n in self.sent]


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def temp_data_dir(monkeypatch, tmp_path):
    """Point every storage path at a temporary directory."""
    data_dir = tmp_path / "data"
    stages_dir = data_dir / "stages"
    stages_dir.mkdir(parents=True)

    monkeypatch.setattr(settings, "data_dir", data_dir)
    monkeypatch.setattr(settings, "source_db_path", data_dir / "source.duckdb")
    monkeypatch.setattr(settings, "audit_db_path", data_dir / "audit.duckdb")
    monkeypatch.setattr(settings, "stages_dir", stages_dir)
    monkeypatch.setattr(settings, "admin_api_key", TEST_ADMIN_API_KEY)
    monkeypatch.setattr(settings, "notify_webhook_url", None)
    monkeypatch.setattr(settings, "sample_seed", None)

    yield {
        "data_dir": data_dir,
        "stages_dir": stages_dir,
        "source_db_path": data_dir / "source.duckdb",
        "audit_db_path": data_dir / "audit.duckdb",
    }


@pytest.fixture
def admin_headers():
    """Return headers with admin API key for authentication."""
    return {"Authorization": f"Bearer {TEST_ADMIN_API_KEY}"}


@pytest.fixture
def store(temp_data_dir):
    """Source data store on the temporary source database."""
    data_store = DataStore()
    yield data_store
    data_store.close()


@pytest.fixture
def audit(temp_data_dir):
    """Audit database in the temporary data directory."""
    return AuditDB()


@pytest.fixture
def make_table(store):
    """Create a source table from a SELECT statement."""

    def _make(name: str, select_sql: str) -> str:
        store.execute(Query(f'CREATE OR REPLACE TABLE "{name}" AS {select_sql}'))
        return name

    return _make


@pytest.fixture
def orders_table(make_table):
    """
    100 rows where (a, b) together are unique but neither column alone is.

    c is constant, d has three values, note is NULL on every fifth row.
    """
    return make_table(
        "orders",
        """
        SELECT
            CAST(i // 10 AS INTEGER) AS a,
            CAST(i % 10 AS INTEGER) AS b,
            'x' AS c,
            CAST(i % 3 AS INTEGER) AS d,
            CASE WHEN i % 5 = 0 THEN NULL ELSE 'note ' || CAST(i AS VARCHAR) END AS note
        FROM range(100) AS r(i)
        """,
    )


@pytest.fixture
def empty_table(make_table):
    return make_table(
        "empty_orders",
        "SELECT CAST(NULL AS INTEGER) AS a, CAST(NULL AS VARCHAR) AS b WHERE false",
    )


@pytest.fixture
def stages(temp_data_dir):
    """Staging, output and keys stages."""
    return {
        "staging": Stage("@staging/orders").create(),
        "output": Stage("@outbound/orders").create(),
        "keys": Stage("@keys").create(),
    }


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


# ============================================
# Fake keyring and encryptor (no gpg binary needed)
# ============================================


class FakeKeyring:
    """Keyring stand-in: any file not containing 'garbage' is a valid key."""

    def __init__(self, gpg_binary=None):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass

    def import_key_file(self, path, name, source=None):
        material = path.read_text()
        if "garbage" in material:
            raise KeyImportError(f"Failed to import {name} key", details={"key": name})
        return RecipientKey(
            name=name,
            fingerprint=hashlib.sha1(material.encode()).hexdigest().upper(),
            emails=(f"{name}@example.test",),
            source=source,
        )


class FakeEncryptor:
    """Prefixes the plaintext with ENC: instead of encrypting it."""

    fail_on_shard: int | None = None

    def __init__(self, keyring, armor=False):
        self.keyring = keyring
        self.armor = armor

    def encrypt(self, plaintext, recipients, output=None, shard_id=None):
        if shard_id is not None and shard_id == self.fail_on_shard:
            raise EncryptionError("gpg said no", shard_id=shard_id)
        output.write_bytes(b"ENC:" + plaintext.read_bytes())
        return output


@pytest.fixture
def fake_gpg(monkeypatch):
    """Replace the pipeline's keyring and encryptor with the fakes."""
    FakeEncryptor.fail_on_shard = None
    monkeypatch.setattr(pipeline, "Keyring", FakeKeyring)
    monkeypatch.setattr(pipeline, "MultiRecipientEncryptor", FakeEncryptor)
    yield FakeEncryptor
    FakeEncryptor.fail_on_shard = None


@pytest.fixture
def fake_keys(stages):
    """Two fake recipient key files in the keys stage."""
    stages["keys"].path_for("partner.asc").write_text("partner public key")
    stages["keys"].path_for("client.asc").write_text("client public key")
    return [
        {"name": "partner", "path": "@keys/partner.asc"},
        {"name": "client", "path": "@keys/client.asc"},
    ]


# ============================================
# GnuPG recipients
# ============================================


def _generate_recipient(home: Path, name: str, email: str) -> dict:
    import gnupg

    home.mkdir(mode=0o700, parents=True, exist_ok=True)
    gpg = gnupg.GPG(gnupghome=str(home))
    key_input = gpg.gen_key_input(
        key_type="RSA",
        key_length=2048,
        name_real=name,
        name_email=email,
        no_protection=True,
    )
    key = gpg.gen_key(key_input)
    assert key.fingerprint, key.stderr
    return {
        "name": name,
        "email": email,
        "home": home,
        "fingerprint": key.fingerprint,
        "public_key": gpg.export_keys(key.fingerprint),
    }


@pytest.fixture(scope="session")
def gpg_recipients(tmp_path_factory):
    """Two recipients, each with its private key in its own GnuPG home."""
    if shutil.which("gpg") is None:
        pytest.skip("gpg binary not available")

    root = tmp_path_factory.mktemp("gnupg")
    return [
        _generate_recipient(root / "partner", "Partner Exports", "exports@partner.example"),
        _generate_recipient(root / "client", "Client Exports", "exports@client.example"),
    ]


@pytest.fixture
def recipient_keys(stages, gpg_recipients):
    """Public keys of both recipients placed in the keys stage."""
    sources = []
    for recipient in gpg_recipients:
        file_name = f"{recipient['name'].split()[0].lower()}.asc"
        stages["keys"].path_for(file_name).write_text(recipient["public_key"])
        sources.append({"name": recipient["name"], "path": f"@keys/{file_name}"})
    return sources


def _decrypt_with(recipient: dict, path: Path) -> bytes:
    import gnupg

    gpg = gnupg.GPG(gnupghome=str(recipient["home"]))
    with open(path, "rb") as f:
        result = gpg.decrypt_file(f)
    assert result.ok, result.status
    return result.data


@pytest.fixture
def decrypt():
    """Decrypt a file with one recipient's private key."""
    return _decrypt_with
