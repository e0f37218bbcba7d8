from datetime import timedelta

import pytest

import accounts
from conftest import T0
from errors import AuthError, ConflictError, ForbiddenError, InputValidationError


def _register(database, settings, name="ada", password="S3cur3!Pass", **kwargs):
    return accounts.register(
        database, settings, username=name, email=f"{name}@example.com", password=password, now=T0, **kwargs
    )


def test_register_stores_salted_hash(temp_db, settings):
    result = _register(temp_db, settings)

    with temp_db.read() as repo:
        row = repo.get_user(result["user"]["id"])
    assert row["pw_salt"]
    assert len(row["pw_salt"]) == 32
    assert row["pw_hash"] != "S3cur3!Pass"
    assert accounts.verify_password("S3cur3!Pass", row["pw_hash"], row["pw_salt"])
    assert not accounts.verify_password("wrong", row["pw_hash"], row["pw_salt"])
    assert "pw_hash" not in result["user"]
    assert result["token"]


def test_verify_password_rejects_missing_or_bad_salt():
    pw_hash, _ = accounts.hash_password("secret123")
    assert not accounts.verify_password("secret123", pw_hash, None)
    assert not accounts.verify_password("secret123", pw_hash, "not-hex")


def test_new_account_defaults(temp_db, settings):
    user = _register(temp_db, settings, profile={"firstName": "Ada"})["user"]
    assert user["role"] == "learner"
    assert user["profile"] == {"firstName": "Ada"}
    assert user["gamification"]["level"] == 1
    assert user["gamification"]["xpToNextLevel"] == 1000
    assert user["learningPreferences"]["dailyGoal"] == 30
    assert user["settings"]["privacy"]["showInLeaderboard"] is True


def test_register_rejects_duplicates_and_bad_input(temp_db, settings):
    _register(temp_db, settings)
    with pytest.raises(ConflictError) as excinfo:
        accounts.register(temp_db, settings, username="other", email="ADA@example.com", password="secret123")
    assert excinfo.value.status_code == 400
    assert excinfo.value.message == "Email already registered"
    with pytest.raises(ConflictError):
        accounts.register(temp_db, settings, username="ada", email="new@example.com", password="secret123")
    with pytest.raises(InputValidationError):
        accounts.register(temp_db, settings, username="x", email="x@example.com", password="secret123")
    with pytest.raises(InputValidationError):
        accounts.register(temp_db, settings, username="bob", email="not-an-email", password="secret123")
    with pytest.raises(InputValidationError):
        accounts.register(temp_db, settings, username="bob", email="bob@example.com", password="123")


def test_login_and_token_lifecycle(temp_db, settings):
    _register(temp_db, settings)
    result = accounts.login(temp_db, settings, email=" Ada@Example.com ", password="S3cur3!Pass", now=T0)
    token = result["token"]

    user = accounts.authenticate(temp_db, token, now=T0 + timedelta(hours=1))
    assert user["username"] == "ada"
    with pytest.raises(AuthError):
        accounts.authenticate(temp_db, token, now=T0 + timedelta(hours=settings.token_ttl_hours + 1))

    accounts.logout(temp_db, token)
    with pytest.raises(AuthError):
        accounts.authenticate(temp_db, token, now=T0 + timedelta(hours=1))
    with pytest.raises(AuthError) as excinfo:
        accounts.authenticate(temp_db, None)
    assert excinfo.value.message == "Access denied. No token provided."


def test_login_failures_share_one_message(temp_db, settings):
    _register(temp_db, settings)
    for email, password in (("ada@example.com", "wrong-pass"), ("nobody@example.com", "S3cur3!Pass")):
        with pytest.raises(AuthError) as excinfo:
            accounts.login(temp_db, settings, email=email, password=password)
        assert excinfo.value.message == "Invalid email or password"


def test_change_password_keeps_current_token_only(temp_db, settings):
    first = _register(temp_db, settings)
    user_id = first["user"]["id"]
    other = accounts.login(temp_db, settings, email="ada@example.com", password="S3cur3!Pass", now=T0)["token"]

    with pytest.raises(InputValidationError):
        accounts.change_password(temp_db, user_id, current_password="nope", new_password="brandnew1")
    accounts.change_password(
        temp_db, user_id, current_password="S3cur3!Pass", new_password="brandnew1", keep_token=first["token"]
    )

    moment = T0 + timedelta(minutes=5)
    assert accounts.authenticate(temp_db, first["token"], now=moment)["id"] == user_id
    with pytest.raises(AuthError):
        accounts.authenticate(temp_db, other, now=moment)
    assert accounts.login(temp_db, settings, email="ada@example.com", password="brandnew1")["token"]


def test_password_reset_flow(temp_db, settings):
    _register(temp_db, settings)
    assert accounts.request_password_reset(temp_db, settings, "ghost@example.com", now=T0) is None

    token = accounts.request_password_reset(temp_db, settings, "ada@example.com", now=T0)
    assert token

    with pytest.raises(InputValidationError):
        accounts.reset_password(temp_db, token, "newpass99", now=T0 + timedelta(minutes=settings.reset_ttl_minutes + 1))
    accounts.reset_password(temp_db, token, "newpass99", now=T0 + timedelta(minutes=10))
    with pytest.raises(InputValidationError):
        accounts.reset_password(temp_db, token, "another99", now=T0 + timedelta(minutes=11))

    assert accounts.login(temp_db, settings, email="ada@example.com", password="newpass99")["token"]


def test_delete_account_frees_email_and_username(temp_db, settings):
    result = _register(temp_db, settings)
    user_id = result["user"]["id"]

    accounts.delete_account(temp_db, user_id, now=T0)

    with temp_db.read() as repo:
        row = repo.get_user(user_id)
    stamp = int(T0.timestamp() * 1000)
    assert row["is_active"] == 0
    assert row["email"] == f"deleted_{stamp}_ada@example.com"
    assert row["username"] == f"deleted_{stamp}_ada"
    with pytest.raises(AuthError):
        accounts.authenticate(temp_db, result["token"], now=T0)
    with pytest.raises(AuthError):
        accounts.login(temp_db, settings, email="ada@example.com", password="S3cur3!Pass")

    again = _register(temp_db, settings)
    assert again["user"]["id"] != user_id


def test_settings_merge_and_admin_check(temp_db, settings):
    user_id = _register(temp_db, settings)["user"]["id"]
    merged = accounts.update_settings(temp_db, user_id, {"privacy": {"showInLeaderboard": False}})
    assert merged["privacy"] == {"showInLeaderboard": False, "showProfile": True}
    assert merged["notifications"]["email"] is True

    with temp_db.read() as repo:
        row = repo.get_user(user_id)
    with pytest.raises(ForbiddenError):
        accounts.require_admin(row)


def test_profile_update_merges_fields(temp_db, settings):
    user_id = _register(temp_db, settings, profile={"firstName": "Ada"})["user"]["id"]
    updated = accounts.update_profile(
        temp_db, user_id, profile={"lastName": "Lovelace"}, learning_preferences={"subjects": ["mathematics"]}
    )
    assert updated["profile"] == {"firstName": "Ada", "lastName": "Lovelace"}
    assert updated["learningPreferences"]["subjects"] == ["mathematics"]
    assert updated["learningPreferences"]["difficulty"] == "beginner"


def test_user_stats_summarises_progress(temp_db, settings):
    user_id = _register(temp_db, settings)["user"]["id"]
    stats = accounts.user_stats(temp_db, user_id)
    assert stats["badgeCount"] == 0
    assert stats["completedPaths"] == 0
    assert stats["gamification"]["level"] == 1
    assert "badges" not in stats["gamification"]
