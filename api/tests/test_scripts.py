"""
Tests for the operator scripts in api/scripts.
"""

import json

from scripts.check_policy import main as check_policy
from scripts.setup_env import build_values, write_env

TEMPLATE = [
    "# GameGate API environment\n",
    "ENVIRONMENT=development\n",
    "JWT_SECRET=CHANGE_ME\n",
    "CORS_ORIGINS=http://localhost:3000\n",
    "REDIS_URL=\n",
]


class TestSetupEnv:
    """.env bootstrap."""

    def test_placeholder_secret_is_generated(self):
        """CHANGE_ME secrets are replaced with a random value."""
        values = build_values(
            TEMPLATE, redis_host=None, redis_port="6379", environment=None, force_rotate=False, dev_cors=False
        )
        assert values["JWT_SECRET"] != "CHANGE_ME"
        assert len(values["JWT_SECRET"]) >= 32
        assert "REDIS_URL" not in values

    def test_redis_and_environment(self):
        """Redis host and environment are written when given."""
        values = build_values(
            TEMPLATE, redis_host="cache", redis_port="6380", environment="production", force_rotate=False, dev_cors=True
        )
        assert values["REDIS_URL"] == "redis://cache:6380/0"
        assert values["ENVIRONMENT"] == "production"
        assert "localhost:5173" in values["CORS_ORIGINS"]

    def test_write_env_keeps_comments(self):
        """Rendering replaces only the chosen keys."""
        rendered = write_env(TEMPLATE, {"JWT_SECRET": "s3cret"})
        assert rendered.startswith("# GameGate API environment\n")
        assert "JWT_SECRET=s3cret\n" in rendered
        assert "ENVIRONMENT=development\n" in rendered


class TestCheckPolicy:
    """Policy file validation CLI."""

    def test_valid_file(self, tmp_path, capsys):
        """A valid file exits 0 and prints the table."""
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"limits": {"chat": {"window_ms": 10000, "max": 30, "tiered": False}}}))
        assert check_policy([str(path)]) == 0
        out = capsys.readouterr().out
        assert "OK" in out
        assert "chat" in out

    def test_invalid_file(self, tmp_path, capsys):
        """An invalid file exits 1."""
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"tier_multipliers": {"vip": -1}}))
        assert check_policy([str(path)]) == 1
        assert "Policy check failed" in capsys.readouterr().err

    def test_no_file(self, monkeypatch):
        """Without a path or POLICY_FILE the check exits 2."""
        monkeypatch.setattr("scripts.check_policy.settings.policy_file", "")
        assert check_policy([]) == 2
