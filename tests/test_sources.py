import json

import pytest
import requests
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from flaggate.config import Settings
from flaggate.database import DatabaseSource, session_factory
from flaggate.dependencies import build_source
from flaggate.exceptions import ReloadError, ReloadErrorKind
from flaggate.sources import HttpSource, JsonFileSource, StaticSource


def write_settings(path, document):
    path.write_text(json.dumps(document), encoding="utf-8")
    return str(path)


def test_static_source_returns_a_copy():
    payload = {"ReverseEcho": {"enabled": True}}
    source = StaticSource(payload)
    fetched = source.fetch()
    fetched["ReverseEcho"]["enabled"] = False
    assert payload["ReverseEcho"]["enabled"] is True


def test_json_file_reads_feature_management_section(tmp_path, manager):
    path = write_settings(tmp_path / "appsettings.json", {
        "Logging": {"LogLevel": {"Default": "Information"}},
        "FeatureManagement": {"ReverseEcho": True},
    })
    assert manager.refresh(JsonFileSource(path)) == 1
    assert manager.current().names() == ["ReverseEcho"]


def test_json_file_without_section(tmp_path):
    path = write_settings(tmp_path / "flags.json", {"ReverseEcho": False})
    assert JsonFileSource(path, section=None).fetch() == {"ReverseEcho": False}


def test_json_file_missing_section(tmp_path, manager):
    path = write_settings(tmp_path / "appsettings.json", {"Logging": {}})
    with pytest.raises(ReloadError) as exc_info:
        manager.refresh(JsonFileSource(path))
    assert exc_info.value.kind == ReloadErrorKind.MALFORMED


def test_json_file_duplicate_flag(tmp_path, manager):
    path = tmp_path / "appsettings.json"
    path.write_text('{"FeatureManagement": {"ReverseEcho": true, "ReverseEcho": false}}', encoding="utf-8")
    with pytest.raises(ReloadError) as exc_info:
        manager.refresh(JsonFileSource(str(path)))
    assert exc_info.value.kind == ReloadErrorKind.DUPLICATE_NAME


def test_json_file_duplicate_outside_section_is_ignored(tmp_path, manager):
    path = tmp_path / "appsettings.json"
    path.write_text(
        '{"Logging": {"Default": "Information", "Default": "Warning"}, "FeatureManagement": {"ReverseEcho": true}}',
        encoding="utf-8",
    )
    assert manager.refresh(JsonFileSource(str(path))) == 1


def test_json_file_repeated_key_inside_rule_is_malformed(tmp_path, manager):
    path = tmp_path / "appsettings.json"
    path.write_text(
        '{"FeatureManagement": {"Beta": {"enabled": true, "rules": ['
        '{"kind": "group_in_list", "kind": "user_in_list", "groups": ["beta"]}]}}}',
        encoding="utf-8",
    )
    with pytest.raises(ReloadError) as exc_info:
        manager.refresh(JsonFileSource(str(path)))
    assert exc_info.value.kind == ReloadErrorKind.MALFORMED
    assert exc_info.value.flag is None


def test_json_file_invalid_json(tmp_path, manager):
    path = tmp_path / "appsettings.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ReloadError) as exc_info:
        manager.refresh(JsonFileSource(str(path)))
    assert exc_info.value.kind == ReloadErrorKind.MALFORMED


def test_json_file_missing_file(tmp_path, manager):
    with pytest.raises(ReloadError) as exc_info:
        manager.refresh(JsonFileSource(str(tmp_path / "absent.json")))
    assert exc_info.value.kind == ReloadErrorKind.SOURCE_UNAVAILABLE


class _FakeResponse:
    def __init__(self, payload=None, status=200, text=None):
        self.text = json.dumps(payload) if text is None else text
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class _FakeSession:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def get(self, url, timeout=None):
        self.calls.append((url, timeout))
        return self.response


def test_http_source_fetches_document(manager):
    session = _FakeSession(_FakeResponse({"FeatureManagement": {"ReverseEcho": True}}))
    source = HttpSource("http://config.local/flags", section="FeatureManagement", timeout=1.5, session=session)
    assert manager.refresh(source) == 1
    assert session.calls == [("http://config.local/flags", 1.5)]


def test_http_source_error_status(manager):
    manager.reload({"ReverseEcho": True})
    source = HttpSource("http://config.local/flags", session=_FakeSession(_FakeResponse({}, status=503)))
    with pytest.raises(ReloadError) as exc_info:
        manager.refresh(source)
    assert exc_info.value.kind == ReloadErrorKind.SOURCE_UNAVAILABLE
    assert manager.generation == 1



def test_http_source_rejects_duplicate_flags(manager):
    body = '{"ReverseEcho": true, "ReverseEcho": false}'
    source = HttpSource("http://config.local/flags", session=_FakeSession(_FakeResponse(text=body)))
    with pytest.raises(ReloadError) as exc_info:
        manager.refresh(source)
    assert exc_info.value.kind == ReloadErrorKind.DUPLICATE_NAME
    assert exc_info.value.flag == "ReverseEcho"
    assert manager.generation == 0


def test_http_source_close_closes_session():
    closed = []

    class _Session(_FakeSession):
        def close(self):
            closed.append(True)

    HttpSource("http://config.local/flags", session=_Session(_FakeResponse({}))).close()
    assert closed == [True]

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE features (key TEXT PRIMARY KEY, enabled BOOLEAN, rollout_percentage INTEGER, rules TEXT)"
        ))
    yield engine
    engine.dispose()


def test_database_source(engine, manager, ctx):
    with engine.begin() as conn:
        conn.execute(
            text("INSERT INTO features (key, enabled, rollout_percentage, rules) VALUES (:k, :e, :p, :r)"),
            [
                {"k": "ReverseEcho", "e": True, "p": None, "r": None},
                {"k": "Beta", "e": True, "p": 0, "r": json.dumps([{"kind": "group_in_list", "groups": ["beta"]}])},
            ],
        )
    source = DatabaseSource(session_factory(engine))
    assert manager.refresh(source) == 1
    assert manager.current().snapshot() == [("Beta", True, 1), ("ReverseEcho", True, 0)]
    assert manager.is_enabled("Beta", ctx(groups=["beta"])) is True
    assert manager.is_enabled("Beta", ctx()) is False


def test_settings_from_env():
    cfg = Settings.from_env({
        "FLAGS_SOURCE": "HTTP",
        "FLAGS_API_URL": "http://config.local/flags",
        "FLAGS_SECTION": "",
        "FLAGS_SUBSCRIBE": "yes",
        "FLAGS_REFRESH_SECONDS": "5",
    })
    assert cfg.source == "http"
    assert cfg.section is None
    assert cfg.subscribe is True
    assert cfg.refresh_seconds == 5.0
    assert cfg.fetch_timeout == 2.0
    source = build_source(cfg)
    assert isinstance(source, HttpSource)
    assert source.url == "http://config.local/flags"


def test_build_source_variants():
    assert isinstance(build_source(Settings()), JsonFileSource)
    assert build_source(Settings(source="none")) is None
    with pytest.raises(ValueError):
        build_source(Settings(source="http"))
    with pytest.raises(ValueError):
        build_source(Settings(source="etcd"))
