from __future__ import annotations

import pytest
from pydantic import ValidationError

from config import TutorConfig


def test_defaults():
    config = TutorConfig()
    assert config.deepgram.model == "nova-2"
    assert config.deepgram.endpointing == 300
    assert config.audio.frame_bytes == 320
    assert config.groq.words_per_session == 15
    assert config.tts.max_chars == 200
    assert config.game.default_age == 7


def test_missing_file_gives_defaults(tmp_path):
    assert TutorConfig.load(tmp_path / "absent.json") == TutorConfig()


def test_unreadable_file_gives_defaults(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    assert TutorConfig.load(path) == TutorConfig()


def test_save_then_load(tmp_path):
    path = tmp_path / "tutor.json"
    config = TutorConfig().merge_patch({"tts": {"voice": "tara"}})
    config.save(path)
    assert TutorConfig.load(path).tts.voice == "tara"


def test_merge_patch_only_touches_named_fields():
    config = TutorConfig().merge_patch({"audio": {"frame_pacing_ms": 10}})
    assert config.audio.frame_pacing_ms == 10
    assert config.audio.frame_bytes == 320
    assert config.deepgram == TutorConfig().deepgram


def test_merge_patch_validates():
    with pytest.raises(ValidationError):
        TutorConfig().merge_patch({"deepgram": {"endpointing": -1}})
