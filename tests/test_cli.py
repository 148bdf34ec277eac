"""Tests for the typer CLI."""

import pytest
from typer.testing import CliRunner

import main
from conftest import write_media, write_meta

runner = CliRunner()


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    data = tmp_path / "data"
    data.mkdir()
    config_path = data / "config.ini"
    monkeypatch.setenv("DATA_DIR", str(data))
    monkeypatch.setattr("artshelf.config.DATA_DIR", data)
    monkeypatch.setattr("artshelf.config.DEFAULT_CONFIG_PATH", config_path)
    monkeypatch.setattr("main.DEFAULT_CONFIG_PATH", config_path)
    return data


def test_commands_require_config(data_dir):
    result = runner.invoke(main.app, ["stats"])
    assert result.exit_code == 1
    assert "config.ini not found" in result.output


def test_init_scan_and_stats(data_dir, tmp_path):
    library = tmp_path / "library"
    write_meta(library / "alice-7", "123")
    write_media(library / "alice-7", "123_p0.jpg", "123_p1.jpg")

    result = runner.invoke(main.app, ["init", "--library", str(library), "--name", "Gallery"])
    assert result.exit_code == 0
    assert (data_dir / "config.ini").exists()

    result = runner.invoke(main.app, ["scan", "--report"])
    assert result.exit_code == 0, result.output
    assert "1 artworks, 2 images" in result.output
    assert "Performance:" in result.output

    result = runner.invoke(main.app, ["stats"])
    assert result.exit_code == 0
    assert "Artworks: 1" in result.output
    assert "Images: 2" in result.output

    result = runner.invoke(main.app, ["estimate", "--type", "metadata"])
    assert result.exit_code == 0
    assert "Estimated scan time" in result.output


def test_reset_requires_confirmation(data_dir, tmp_path):
    runner.invoke(main.app, ["init", "--library", str(tmp_path)])
    result = runner.invoke(main.app, ["reset"])
    assert result.exit_code == 1
    assert "--yes" in result.output

    result = runner.invoke(main.app, ["reset", "--yes"])
    assert result.exit_code == 0
    assert (data_dir / "library.db").exists()
