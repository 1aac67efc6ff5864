"""Tests for loading configuration."""

from pathlib import Path

import pytest

from driftless.config import DriftlessConfig, load_config, parse_config
from driftless.exceptions import ValidationError


def test_defaults() -> None:
    config = parse_config(None)
    assert config == DriftlessConfig()
    assert config.source.interval == 180.0
    assert config.source.backoff_base == 5.0
    assert config.source.backoff_cap == 300.0
    assert config.reconciler.max_retries == 5
    assert config.controller.control_namespace == "driftless-system"


async def test_load_config(tmp_path: Path) -> None:
    config_file = tmp_path / "driftless.yaml"
    config_file.write_text(
        """\
source:
  interval: 30
reconciler:
  max_retries: 2
pipeline:
  build_command: ./build.sh
state_file: /var/lib/driftless/state.yaml
"""
    )
    config = await load_config(config_file)
    assert config.source.interval == 30
    assert config.source.backoff_cap == 300.0
    assert config.reconciler.max_retries == 2
    assert config.pipeline.build_command == "./build.sh"
    assert config.state_file == "/var/lib/driftless/state.yaml"


@pytest.mark.parametrize(
    ("content", "match"),
    [
        ("unknown: 1\n", "Invalid configuration"),
        ("source:\n  intervl: 30\n", "Invalid configuration"),
        ("reconciler:\n  max_retries: many\n", "Invalid configuration"),
        ("- a\n", "expected a mapping"),
        ("source: [unclosed\n", "Unable to parse"),
    ],
)
async def test_invalid_config(tmp_path: Path, content: str, match: str) -> None:
    config_file = tmp_path / "driftless.yaml"
    config_file.write_text(content)
    with pytest.raises(ValidationError, match=match):
        await load_config(config_file)


async def test_missing_config(tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="does not exist"):
        await load_config(tmp_path / "missing.yaml")
