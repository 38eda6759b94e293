"""
Tests for the CLI interface.
"""
import hashlib
import hmac
import os
import shutil
import tempfile
from unittest.mock import patch

from typer.testing import CliRunner

from conftest import FakeChatModel
from research_guard.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app
from research_guard.sdk.openai_client import Finish, TextDelta
from research_guard.storage.models import EventType, UsageEvent
from research_guard.storage.repository import UsageRepository

runner = CliRunner()


class TestCLI:
    """Test CLI commands against a temporary local ledger."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "ledger.db")
        self.env = {
            "RESEARCH_GUARD_DB_PATH": self.db_path,
            "RESEARCH_GUARD_LEDGER_BACKEND": "local",
            "FLEXPRICE_WEBHOOK_SECRET": "whsec_test",
            "RESEARCH_GUARD_CONFIG": "",
        }

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _invoke(self, args):
        return runner.invoke(app, args, env=self.env)

    def _seed(self):
        repository = UsageRepository(self.db_path)
        repository.initialize_schema()
        repository.insert_event(UsageEvent(
            user_id="u1",
            event_type=EventType.REPORT_GENERATED,
            credits=3,
            metadata={"processingTime": 120},
        ))
        repository.insert_event(UsageEvent(user_id="u1", event_type=EventType.QUESTION_ASKED, credits=1))

    def test_no_command_prints_hint(self):
        result = self._invoke([])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Research Guard" in result.output

    def test_init(self):
        result = self._invoke(["init"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "initialized" in result.output
        assert os.path.exists(self.db_path)

    def test_status_never_prints_secrets(self):
        result = self._invoke(["status"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "whsec_test" not in result.output
        assert "local" in result.output

    def test_invalid_config(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            f.write("budget:\n  daily: 10\n")

        result = self._invoke(["--config", config_path, "status"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid configuration" in result.output

    def test_usage(self):
        self._seed()

        result = self._invoke(["usage", "u1"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Credits used" in result.output
        assert "96" in result.output

    def test_analytics(self):
        self._seed()

        result = self._invoke(["analytics", "u1", "--days", "7"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "report_generated" in result.output
        assert "question_asked" in result.output

    def test_analytics_without_data(self):
        result = self._invoke(["analytics", "nobody"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage" in result.output

    def test_analytics_requires_local_backend(self):
        self.env["RESEARCH_GUARD_LEDGER_BACKEND"] = "http"

        result = self._invoke(["analytics", "u1"])

        assert result.exit_code == EXIT_CODE_FAIL

    def test_verify_webhook(self):
        payload = b'{"event_type":"credit.added"}'
        payload_file = os.path.join(self.temp_dir, "payload.json")
        with open(payload_file, "wb") as f:
            f.write(payload)
        signature = hmac.new(b"whsec_test", payload, hashlib.sha256).hexdigest()

        valid = self._invoke(["verify-webhook", payload_file, signature])
        invalid = self._invoke(["verify-webhook", payload_file, "0" * 64])

        assert valid.exit_code == EXIT_CODE_PASS
        assert invalid.exit_code == EXIT_CODE_FAIL

    def test_chat(self):
        model = FakeChatModel([TextDelta("Hello from the model"), Finish("stop")])

        with patch("research_guard.sdk.openai_client.OpenAIChatModel", return_value=model):
            result = self._invoke(["chat", "u1", "hi"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Hello from the model" in result.output
        assert UsageRepository(self.db_path).summarize_user("u1", 100).total_credits_used == 1

    @patch("uvicorn.run")
    def test_serve(self, mock_run):
        result = self._invoke(["serve", "--port", "9001"])

        assert result.exit_code == EXIT_CODE_PASS
        assert mock_run.call_args.kwargs["port"] == 9001
