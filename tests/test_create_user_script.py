"""Tests for the account management script."""

import importlib.util
from pathlib import Path

import pytest

from examrevise.service.passwords import PasswordVerifier
from examrevise.service.runtime import get_runtime
from examrevise.storage.memory import MemoryStore

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "create_user.py"
_loader_spec = importlib.util.spec_from_file_location("create_user_script", _SCRIPT)
create_user_script = importlib.util.module_from_spec(_loader_spec)
_loader_spec.loader.exec_module(create_user_script)


@pytest.fixture
def store():
    return MemoryStore()


class TestValidatePassword:
    @pytest.mark.parametrize("password", ["short1", "lettersonly", "1234567890"])
    def test_weak_passwords_rejected(self, password):
        assert create_user_script.validate_password(password) is False

    def test_reasonable_password_accepted(self):
        assert create_user_script.validate_password("revision42") is True


class TestCreateUser:
    def test_creates_user_with_argon2_hash(self, store):
        result = create_user_script.create_user(store, "New@Example.com", "revision42")
        assert result["status"] == "created"
        user = store.get_user_by_email("new@example.com")
        assert user.user_name == "new"
        assert user.password.startswith("$argon2id$")
        assert PasswordVerifier().verify("revision42", user.password)

    def test_existing_user_untouched(self, store):
        existing = store.create_user("new@example.com", password="$argon2id$old")
        result = create_user_script.create_user(store, "new@example.com", "revision42")
        assert result == {"user_id": existing.user_id, "email": "new@example.com", "status": "exists"}
        assert store.get_user(existing.user_id).password == "$argon2id$old"

    def test_dry_run_creates_nothing(self, store):
        result = create_user_script.create_user(store, "new@example.com", "revision42", dry_run=True)
        assert result["status"] == "dry_run"
        assert store.get_user_by_email("new@example.com") is None


class TestSetBlocked:
    def test_block_and_unblock(self, store):
        user = store.create_user("student@example.com")
        assert create_user_script.set_blocked(store, "student@example.com", True)["status"] == "blocked"
        assert store.get_user(user.user_id).is_blocked is True
        assert create_user_script.set_blocked(store, "student@example.com", True)["status"] == "unchanged"
        assert create_user_script.set_blocked(store, "student@example.com", False)["status"] == "unblocked"
        assert store.get_user(user.user_id).is_blocked is False

    def test_missing_user(self, store):
        assert create_user_script.set_blocked(store, "ghost@example.com", True)["status"] == "missing"


class TestMain:
    def test_main_creates_in_runtime_store(self):
        exit_code = create_user_script.main(
            ["create", "--email", "cli@example.com", "--password", "revision42", "--first-name", "Cli"]
        )
        assert exit_code == 0
        assert get_runtime().store.get_user_by_email("cli@example.com").fname == "Cli"

    def test_main_rejects_weak_password(self):
        assert create_user_script.main(["create", "--email", "cli@example.com", "--password", "weak"]) == 1

    def test_main_block_unknown_user_fails(self):
        assert create_user_script.main(["block", "--email", "ghost@example.com"]) == 1
