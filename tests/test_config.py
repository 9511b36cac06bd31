"""
Unit tests for EngineConfig persistence and patching.
"""
import pytest
from pydantic import ValidationError

from config import EngineConfig


def test_defaults_match_agent_handshake():
    config = EngineConfig()

    assert config.audio.input_sample_rate == 24000
    assert config.agent.speak_model == "aura-2-arcas-en"
    assert config.sessions.stale_after_sec == 1800
    assert config.extraction.open_markers == ["```yaml"]
    assert "looks good" in config.approval.phrases


def test_load_missing_file_returns_defaults(tmp_path):
    assert EngineConfig.load(tmp_path / "absent.json") == EngineConfig()


def test_load_invalid_file_returns_defaults(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    assert EngineConfig.load(path) == EngineConfig()


def test_save_then_load(tmp_path):
    path = tmp_path / "config.json"
    config = EngineConfig().merge_patch({"codegen": {"temperature": 0.2, "output_dir": "out"}})

    config.save(path)

    loaded = EngineConfig.load(path)
    assert loaded.codegen.temperature == 0.2
    assert loaded.codegen.output_dir == "out"


def test_merge_patch_is_nested_and_non_destructive():
    base = EngineConfig()

    patched = base.merge_patch({"approval": {"phrases": ["ship it"]}, "agent": {"keepalive_sec": 8}})

    assert patched.approval.phrases == ["ship it"]
    assert patched.approval.corrective_message == base.approval.corrective_message
    assert patched.agent.keepalive_sec == 8
    assert patched.agent.url == base.agent.url
    assert base.approval.phrases != ["ship it"]


def test_merge_patch_revalidates():
    with pytest.raises(ValidationError):
        EngineConfig().merge_patch({"audio": {"input_sample_rate": 1}})
