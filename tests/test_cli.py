import argparse
import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from minder_resilience.cli import _parse_resize, build_parser, main
from minder_resilience.core_logic.resilient_queue import ReplayStats


def test_parse_resize():
    assert (_parse_resize("800x600").width, _parse_resize("800x600").height) == (800, 600)
    assert _parse_resize("x300").width is None
    assert _parse_resize("640X").height is None
    for bad in ("800", "axb"):
        with pytest.raises(argparse.ArgumentTypeError):
            _parse_resize(bad)


def test_upload_arguments():
    args = build_parser(Path("config.ini")).parse_args(
        ["upload", "a.png", "b.png", "--chunked", "--chunk-size", "2048", "--resize", "100x", "--format", "webp"]
    )
    assert args.command == "upload"
    assert args.files == ["a.png", "b.png"]
    assert args.chunked is True
    assert args.chunk_size == 2048
    assert args.resize.width == 100
    assert args.image_format == "webp"
    assert args.fit == "contain"


def test_version_exits_before_touching_config(tmp_path, capsys):
    assert main(["--config", str(tmp_path / "config.ini"), "--version"]) == 0
    assert "minder-resilience" in capsys.readouterr().out
    assert not (tmp_path / "config.ini").exists()


def test_check_config(config_file):
    assert main(["--simple", "--config", str(config_file), "--check-config"]) == 0
    config_file.write_text(config_file.read_text().replace("chunk_size = 1048576", "chunk_size = 0"))
    assert main(["--simple", "--config", str(config_file), "--check-config"]) == 1


def test_first_run_creates_config_from_template(tmp_path):
    config_path = tmp_path / "config.ini"
    assert main(["--simple", "--config", str(config_path), "queue"]) == 0
    assert config_path.is_file()
    assert any((tmp_path / "logs").iterdir())


def test_enqueue_persists_next_to_config(config_file):
    assert main(["--simple", "--config", str(config_file), "enqueue", "post", "/items", "--data", '{"n": 1}']) == 0
    assert main(["--simple", "--config", str(config_file), "enqueue", "get", "/items"]) == 1

    stored = json.loads((config_file.parent / "offline_queue.json").read_text())
    queued = json.loads(stored["minder_offline_queue"])
    assert len(queued) == 1
    assert queued[0]["method"] == "POST"
    assert queued[0]["target_url"] == "/items"

    assert main(["--simple", "--config", str(config_file), "queue", "--clear"]) == 0
    stored = json.loads((config_file.parent / "offline_queue.json").read_text())
    assert json.loads(stored["minder_offline_queue"]) == []


def test_enqueue_rejects_bad_json(config_file):
    assert main(["--simple", "--config", str(config_file), "enqueue", "POST", "/items", "--data", "{bad"]) == 1


def test_replay_reports_errors_in_exit_code(config_file):
    stats = ReplayStats(total=1, requeued=1, errors=[{"id": "op-1", "error": "boom"}])
    with patch("minder_resilience.cli.ReplayEngine") as engine_cls:
        engine_cls.return_value.drain_and_replay = AsyncMock(return_value=stats)
        assert main(["--simple", "--config", str(config_file), "replay"]) == 1
