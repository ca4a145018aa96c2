"""Tests for the HTTP control surface."""
import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from core.config import ConfigManager
from core.controller import CookAlongController
from fakes import FakeAssistant, FakeSpeechInput, FakeSpeechOutput, fast_config

RECIPE = {
    "id": 7,
    "title": "Tomato Soup",
    "readyInMinutes": 30,
    "servings": 2,
    "ingredients": ["2 onions", "6 tomatoes"],
    "instructions": ["Chop the onions.", "Simmer for 10 minutes.", "Blend and serve."],
}


@pytest.fixture
def output():
    return FakeSpeechOutput()


@pytest.fixture
def config_manager(tmp_path):
    cm = ConfigManager(tmp_path)
    cm.update_nested("api_keys", claude="sk-ant-1234567890")
    return cm


@pytest.fixture
def client(config_manager, output):
    controller = CookAlongController(
        fast_config(),
        FakeSpeechInput(),
        output,
        FakeAssistant(reply="Medium heat is best."),
    )
    app = create_app(config_manager, controller)
    with TestClient(app) as client:
        yield client


def _start(client):
    response = client.post("/api/session/start", json={"recipe": RECIPE, "mode": "manual"})
    assert response.status_code == 200
    return response.json()


class TestHealth:
    def test_health(self, client):
        data = client.get("/api/health").json()
        assert data["status"] == "ok"
        assert data["session_state"] == "not_started"
        assert data["provider"] == "claude"


class TestSessionRoutes:
    def test_snapshot_without_session(self, client):
        data = client.get("/api/session/").json()
        assert data["state"] == "not_started"
        assert data["recipe"] is None

    def test_command_requires_session(self, client):
        response = client.post("/api/session/command", json={"command": "next"})
        assert response.status_code == 409

    def test_start_and_navigate(self, client, output):
        data = _start(client)
        assert data["started"]
        assert data["session"]["state"] == "awaiting_start"
        assert data["session"]["recipe"]["title"] == "Tomato Soup"

        client.post("/api/session/command", json={"command": "start"})
        data = client.post("/api/session/command", json={"command": "next"}).json()
        assert data["handled"]
        assert data["session"]["current_step_index"] == 1
        assert data["session"]["timers"][0]["description"] == "Simmer for 10 minutes"
        assert output.said("Step 2 of 3")

    def test_invalid_command(self, client):
        _start(client)
        response = client.post("/api/session/command", json={"command": "dance"})
        assert response.status_code == 422

    def test_invalid_recipe(self, client):
        response = client.post("/api/session/start", json={"recipe": {"servings": 2}})
        assert response.status_code == 422

    def test_question(self, client, output):
        _start(client)
        data = client.post("/api/session/question", json={"question": "How hot?"}).json()
        assert data["answer"] == "Medium heat is best."
        assert output.spoken[-1] == "Medium heat is best."

    def test_ingredients(self, client):
        _start(client)
        assert client.put("/api/session/ingredients/2 onions").json()["checked"]
        assert client.get("/api/session/").json()["checked_ingredients"] == ["2 onions"]
        client.delete("/api/session/ingredients/2 onions")
        assert client.get("/api/session/").json()["checked_ingredients"] == []

    def test_cancel_timer(self, client):
        _start(client)
        client.post("/api/session/command", json={"command": "start"})
        session = client.post("/api/session/command", json={"command": "next"}).json()["session"]
        timer_id = session["timers"][0]["id"]

        assert client.post(f"/api/session/timers/{timer_id}/cancel").json()["status"] == "cancelled"
        assert client.get("/api/session/").json()["timers"] == []
        assert client.post(f"/api/session/timers/{timer_id}/cancel").status_code == 404

    def test_exit(self, client, output):
        _start(client)
        assert client.post("/api/session/exit").json()["status"] == "exited"
        assert client.get("/api/session/").json()["state"] == "not_started"
        assert output.said("See you next time")

    def test_end(self, client):
        _start(client)
        client.post("/api/session/end")
        assert client.get("/api/session/").json()["recipe"] is None


class TestSettingsRoutes:
    def test_api_keys_masked(self, client):
        data = client.get("/api/settings/").json()
        assert data["api_keys"]["claude"] == "sk-a****7890"
        assert data["api_keys"]["openai"] == ""

    def test_update_voice_applies_to_output(self, client, output, config_manager):
        data = client.put("/api/settings/voice", json={"speech_rate": 0.8, "voice_name": "en_GB-alba-medium"}).json()
        assert data["voice"]["speech_rate"] == 0.8
        assert output.settings.voice_name == "en_GB-alba-medium"
        assert config_manager.config.voice.speech_rate == 0.8

    def test_update_listening(self, client, config_manager):
        data = client.put("/api/settings/listening", json={"silence_timeout_ms": 1200}).json()
        assert data["restart_required"]
        assert config_manager.config.listening.silence_timeout_ms == 1200

    def test_invalid_provider(self, client):
        assert "error" in client.put("/api/settings/provider", json={"provider": "gemini"}).json()

    def test_switch_provider(self, client, config_manager):
        client.put("/api/settings/provider", json={"provider": "openai"})
        assert config_manager.config.provider == "openai"

    def test_premium_voice_settings_reach_output(self, client, output):
        client.put("/api/settings/voice", json={"is_premium": True, "voice_id": "nova"})
        assert output.settings.is_premium
        assert output.settings.voice_id == "nova"
