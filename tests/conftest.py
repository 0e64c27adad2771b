import importlib
import os

import pytest
from fastapi.testclient import TestClient


class FakeTwilioCall:
    def __init__(self, sid: str, status: str = "queued") -> None:
        self.sid = sid
        self.status = status


class FakeTwilioCalls:
    def __init__(self) -> None:
        self.created: list[dict] = []

    def create(self, **kwargs):
        self.created.append(kwargs)
        return FakeTwilioCall("CA_OUT_1")


class FakeTwilioClient:
    def __init__(self) -> None:
        self.calls = FakeTwilioCalls()


@pytest.fixture(scope="session")
def app(tmp_path_factory: pytest.TempPathFactory):
    recordings_dir = tmp_path_factory.mktemp("recordings")

    # Must be set before the settings module is first imported.
    os.environ["OPENAI_API_KEY"] = "sk-test"
    os.environ["RECORDINGS_DIR"] = str(recordings_dir)
    os.environ["VALIDATE_TWILIO_SIGNATURE"] = "false"

    main = importlib.import_module("voicebridge.main")
    settings = main._get_settings()
    # A developer .env may override the environment above
    settings.openai_api_key = "sk-test"
    settings.recordings_dir = recordings_dir
    settings.validate_twilio_signature = False
    settings.twilio_phone_number = "+15550000000"
    settings.base_url = None
    return main.app


@pytest.fixture()
def recordings_dir(app):
    from voicebridge.config import settings

    directory = settings.recordings_dir
    for path in directory.glob("*"):
        path.unlink()
    return directory


@pytest.fixture()
def twilio_client():
    return FakeTwilioClient()


@pytest.fixture()
def client(app, twilio_client, recordings_dir):
    import voicebridge.main as main
    from voicebridge.session.registry import session_registry

    app.dependency_overrides[main.get_twilio_client] = lambda: twilio_client

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    session_registry.clear()
