"""Tests for configuration modules (credentials and settings)."""

import os
import shutil
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from ranchvault.config.credentials import (
    BLOB_KEY_ENV_VAR,
    CredentialError,
    CredentialNotFoundError,
    CredentialSession,
    CredentialStore,
    CredentialStoreLockedError,
    CredentialStoreNotInitializedError,
    InvalidPassphraseError,
    blob_endpoint,
    resolve_blob_service_key,
)
from ranchvault.config.settings import (
    DEFAULT_CONFIG_FILE,
    BlobStoreConfig,
    ConfigurationError,
    Settings,
    _apply_environment_overrides,
    _settings_to_dict,
    _validate_config,
    get_config_path,
    load_config,
    save_config,
)

PASSPHRASE = "correct horse battery staple"
PROD = "https://photos.example.com/storage#animal-photos"
STAGING = "https://staging.example.com/storage#animal-photos"


class FastCredentialStore(CredentialStore):
    """Credential store with a cheap key derivation for tests."""

    kdf_iterations = 1_000


class TestCredentialSession(unittest.TestCase):
    """Tests for CredentialSession class."""

    def test_session_not_expired(self) -> None:
        session = CredentialSession(fernet=None, timeout_seconds=60)
        self.assertFalse(session.is_expired())

    def test_session_expired(self) -> None:
        session = CredentialSession(fernet=None, created_at=time.time() - 120, timeout_seconds=60)
        self.assertTrue(session.is_expired())


class TestCredentialStore(unittest.TestCase):
    """Tests for CredentialStore class."""

    def setUp(self) -> None:
        self.temp_dir = Path(tempfile.mkdtemp())
        self.store = FastCredentialStore(config_dir=self.temp_dir)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_not_initialized(self) -> None:
        self.assertFalse(self.store.is_initialized())
        self.assertFalse(self.store.is_unlocked())

    def test_initialize_creates_files(self) -> None:
        self.store.initialize(PASSPHRASE)

        self.assertTrue(self.store.is_initialized())
        self.assertTrue(self.store.salt_path.exists())
        self.assertTrue(self.store.credentials_path.exists())
        self.assertTrue(self.store.is_unlocked())

    def test_initialize_short_passphrase(self) -> None:
        with self.assertRaises(ValueError):
            self.store.initialize("short")

    def test_initialize_twice_fails(self) -> None:
        self.store.initialize(PASSPHRASE)
        with self.assertRaises(CredentialError):
            self.store.initialize(PASSPHRASE)

    def test_unlock_uninitialized(self) -> None:
        with self.assertRaises(CredentialStoreNotInitializedError):
            self.store.unlock(PASSPHRASE)

    def test_unlock_wrong_passphrase(self) -> None:
        self.store.initialize(PASSPHRASE)
        self.store.lock()

        with self.assertRaises(InvalidPassphraseError):
            self.store.unlock("the wrong passphrase")

    def test_set_and_get_blob_key(self) -> None:
        self.store.initialize(PASSPHRASE)
        self.store.set_blob_key(PROD, "secret-key")

        # A fresh instance reads the same encrypted file
        other = FastCredentialStore(config_dir=self.temp_dir)
        other.unlock(PASSPHRASE)

        self.assertEqual(other.get_blob_key(PROD), "secret-key")

    def test_keys_filed_per_endpoint(self) -> None:
        self.store.initialize(PASSPHRASE)
        self.store.set_blob_key(PROD, "prod-key")
        self.store.set_blob_key(STAGING, "staging-key")
        self.store.set_blob_key(PROD, "rotated-key")

        self.assertEqual(self.store.get_blob_key(PROD), "rotated-key")
        self.assertEqual(self.store.get_blob_key(STAGING), "staging-key")

    def test_keys_not_plaintext(self) -> None:
        self.store.initialize(PASSPHRASE)
        self.store.set_blob_key(PROD, "secret-key")

        contents = self.store.credentials_path.read_bytes()
        self.assertNotIn(b"secret-key", contents)
        self.assertNotIn(b"photos.example.com", contents)

    def test_get_missing_blob_key(self) -> None:
        self.store.initialize(PASSPHRASE)
        self.store.set_blob_key(STAGING, "staging-key")

        with self.assertRaises(CredentialNotFoundError):
            self.store.get_blob_key(PROD)

    def test_locked_store_refuses_access(self) -> None:
        self.store.initialize(PASSPHRASE)
        self.store.lock()

        with self.assertRaises(CredentialStoreLockedError):
            self.store.get_blob_key(PROD)
        with self.assertRaises(CredentialStoreLockedError):
            self.store.set_blob_key(PROD, "key")

    def test_expired_session_locks(self) -> None:
        self.store.initialize(PASSPHRASE)
        self.store.lock()
        self.store.unlock(PASSPHRASE, timeout_seconds=60)
        self.store._session.created_at -= 120

        self.assertFalse(self.store.is_unlocked())
        with self.assertRaises(CredentialStoreLockedError):
            self.store.get_blob_key(PROD)

    def test_blob_endpoint(self) -> None:
        config = BlobStoreConfig(url="https://photos.example.com/storage/", bucket="animal-photos")
        self.assertEqual(blob_endpoint(config), PROD)


class TestResolveBlobServiceKey(unittest.TestCase):
    """Tests for resolve_blob_service_key."""

    def setUp(self) -> None:
        self.temp_dir = Path(tempfile.mkdtemp())
        self.config = BlobStoreConfig(
            backend="http", url="https://photos.example.com/storage", bucket="animal-photos"
        )

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_environment_wins(self) -> None:
        with patch.dict(os.environ, {BLOB_KEY_ENV_VAR: "from-env"}):
            self.assertEqual(resolve_blob_service_key(self.config), "from-env")

    def test_no_source(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(CredentialNotFoundError):
                resolve_blob_service_key(self.config)

    def test_from_store(self) -> None:
        store = FastCredentialStore(config_dir=self.temp_dir)
        store.initialize(PASSPHRASE)
        store.set_blob_key(PROD, "from-store")

        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(resolve_blob_service_key(self.config, store), "from-store")

    def test_other_endpoint_not_used(self) -> None:
        store = FastCredentialStore(config_dir=self.temp_dir)
        store.initialize(PASSPHRASE)
        store.set_blob_key(STAGING, "staging-key")

        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(CredentialNotFoundError):
                resolve_blob_service_key(self.config, store)


class TestSettings(unittest.TestCase):
    """Tests for settings loading and validation."""

    def setUp(self) -> None:
        self.temp_dir = Path(tempfile.mkdtemp())
        self.config_path = self.temp_dir / "config.yaml"

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_defaults(self) -> None:
        settings = Settings()

        self.assertEqual(settings.blob_store.backend, "local")
        self.assertEqual(settings.export.page_size, 500)
        self.assertEqual(settings.restore.duplicate_policy, "skip")
        self.assertEqual(settings.retry.max_retries, 3)

    def test_get_config_path_default(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(get_config_path(), DEFAULT_CONFIG_FILE)

    def test_get_config_path_env(self) -> None:
        with patch.dict(os.environ, {"RANCHVAULT_CONFIG": "/tmp/other.yaml"}):
            self.assertEqual(get_config_path(), Path("/tmp/other.yaml"))

    def test_load_missing_file_returns_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            settings = load_config(self.config_path)
        self.assertEqual(settings.log_level, "INFO")

    def test_save_and_load_round_trip(self) -> None:
        settings = Settings()
        settings.export.page_size = 50
        settings.restore.duplicate_policy = "update"
        settings.blob_store.root = str(self.temp_dir / "blobs")

        save_config(settings, self.config_path)
        with patch.dict(os.environ, {}, clear=True):
            loaded = load_config(self.config_path)

        self.assertEqual(_settings_to_dict(loaded), _settings_to_dict(settings))

    def test_load_partial_yaml(self) -> None:
        self.config_path.write_text("restore:\n  batch_size: 25\nretry:\n  base_delay: 0\n")

        with patch.dict(os.environ, {}, clear=True):
            settings = load_config(self.config_path)

        self.assertEqual(settings.restore.batch_size, 25)
        self.assertEqual(settings.retry.base_delay, 0.0)
        self.assertEqual(settings.export.page_size, 500)

    def test_restore_progress_separate_from_export(self) -> None:
        self.config_path.write_text(
            "export:\n  progress_every: 100\n"
            "restore:\n  progress_every: 5\n  progress_interval_seconds: 0.5\n"
        )

        with patch.dict(os.environ, {}, clear=True):
            settings = load_config(self.config_path)

        self.assertEqual(settings.export.progress_every, 100)
        self.assertEqual(settings.export.progress_interval_seconds, 2.0)
        self.assertEqual(settings.restore.progress_every, 5)
        self.assertEqual(settings.restore.progress_interval_seconds, 0.5)
        self.assertEqual(_settings_to_dict(settings)["restore"]["progress_every"], 5)

    def test_invalid_yaml(self) -> None:
        self.config_path.write_text("restore: [unclosed\n")
        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_non_mapping_yaml(self) -> None:
        self.config_path.write_text("- a\n- b\n")
        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_bad_number(self) -> None:
        self.config_path.write_text("export:\n  page_size: lots\n")
        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_environment_overrides(self) -> None:
        env = {
            "RANCHVAULT_DATA_DIR": "/srv/ranchvault",
            "RANCHVAULT_BLOB_ROOT": "/srv/blobs",
            "RANCHVAULT_DUPLICATE_POLICY": "ERROR",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = _apply_environment_overrides(Settings())

        self.assertEqual(settings.data_dir, "/srv/ranchvault")
        self.assertEqual(settings.blob_store.root, "/srv/blobs")
        self.assertEqual(settings.restore.duplicate_policy, "error")

    def test_validate_rejects_bad_values(self) -> None:
        cases = [
            ("log_level", None, "LOUD"),
            ("backend", "blob_store", "ftp"),
            ("page_size", "export", 0),
            ("compression_level", "export", 11),
            ("batch_size", "restore", 0),
            ("duplicate_policy", "restore", "merge"),
            ("progress_every", "restore", 0),
        ]
        for attr, section, value in cases:
            with self.subTest(attr=attr):
                settings = Settings()
                target = getattr(settings, section) if section else settings
                setattr(target, attr, value)
                with self.assertRaises(ConfigurationError):
                    _validate_config(settings)

    def test_http_backend_requires_url(self) -> None:
        settings = Settings()
        settings.blob_store.backend = "http"
        with self.assertRaises(ConfigurationError):
            _validate_config(settings)

        settings.blob_store.url = "https://example.test"
        _validate_config(settings)


if __name__ == "__main__":
    unittest.main()
