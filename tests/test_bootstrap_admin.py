import json

import pytest

from credkeep.service.runtime import get_runtime
from credkeep.storage.models import Role
from scripts.bootstrap_admin import bootstrap_admin, main

PASSWORD = "AdminPassword123!"


def test_creates_verified_admin():
    result = bootstrap_admin("admin@example.com", PASSWORD)

    assert result["status"] == "created"
    user = get_runtime().store.get_user_by_email("admin@example.com")
    assert user.roles == {Role.USER, Role.ADMIN}
    assert user.email_verified is True
    assert get_runtime().auth.verify_password(user, PASSWORD)


def test_promotes_existing_user_and_is_idempotent():
    store = get_runtime().store
    store.create_user("ops@example.com", "hash")

    assert bootstrap_admin("ops@example.com", PASSWORD)["status"] == "promoted"
    assert bootstrap_admin("ops@example.com", PASSWORD)["status"] == "already_admin"
    assert store.get_user_by_email("ops@example.com").password_hash == "hash"


def test_dry_run_changes_nothing():
    result = bootstrap_admin("new@example.com", PASSWORD, dry_run=True)

    assert result["status"] == "would_create"
    assert get_runtime().store.get_user_by_email("new@example.com") is None


def test_cli_rejects_short_password(capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["--email", "admin@example.com", "--password", "short"])

    assert exc_info.value.code == 2
    assert "at least 8 characters" in capsys.readouterr().err


def test_cli_purge_prints_counts(capsys):
    assert main(["--purge-expired"]) == 0

    counts = json.loads(capsys.readouterr().out)
    assert set(counts) == {"refresh_tokens", "password_reset_tokens", "email_verification_tokens"}
