from pathlib import Path

import pytest

from taleforge.config import ServiceConfig, Settings
from taleforge.storage import Storage

STORY_ID = "broken-compass"


@pytest.fixture
def storage(tmp_path: Path) -> Storage:
    """Fresh JSON storage rooted in the test's tmp dir."""
    return Storage(tmp_path / "data")


@pytest.fixture
def service() -> ServiceConfig:
    return ServiceConfig(provider_url="http://llm.test", model="stub-model", timeout=5.0)


@pytest.fixture
def settings() -> Settings:
    """Settings with every service mapped to one stub preset."""
    return Settings.model_validate({
        "connections": [{"name": "local", "provider_url": "http://llm.test"}],
        "presets": [{"name": "stub", "connection": "local", "model": "stub-model", "timeout": 5.0}],
        "services": {
            "narrative": "stub",
            "classification": "stub",
            "entry_retrieval": "stub",
            "translation": "stub",
            "image_analysis": "stub",
            "suggestions": "stub",
        },
    })
