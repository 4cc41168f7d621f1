"""
Shared pytest fixtures for analyzer tests.

- config: AnalyzerConfig writing into a temporary output directory
- mock_client: MagicMock standing in for AnypointClient
- make_jar: builds a deployment archive with the given members
"""

import io
import zipfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from mule_consumption_analyzer import AnalyzerConfig, AnypointClient


@pytest.fixture
def config(tmp_path: Path) -> AnalyzerConfig:
    return AnalyzerConfig(
        client_id="client",
        client_secret="secret",
        output_dir=str(tmp_path / "out"),
    )


@pytest.fixture
def mock_client(config: AnalyzerConfig) -> MagicMock:
    client = MagicMock(spec=AnypointClient)
    client.config = config
    client.get.return_value = None
    client.get_binary.return_value = None
    return client


@pytest.fixture
def make_jar():
    def _make(members: dict, padding: int = 0) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as zf:
            for name, content in members.items():
                zf.writestr(name, content)
            if padding:
                zf.writestr("lib/padding.bin", b"\0" * padding)
        return buffer.getvalue()

    return _make
