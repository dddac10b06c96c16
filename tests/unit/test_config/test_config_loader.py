# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for YAML config loading and merging."""
from __future__ import annotations

import argparse

import pytest

from fakes.fake_logger import FakeLogger

from kvmigrate.config import Config
from kvmigrate.core.exceptions import Fatal


@pytest.fixture
def logger():
    return FakeLogger()


def _write(path, text):
    path.write_text(text, encoding="utf-8")
    return path


@pytest.mark.unit
class TestLoad:
    def test_keys_are_normalized(self, tmp_path, logger):
        p = _write(tmp_path / "a.yaml", "migrate-downtime: 0.3\nssh:\n  user: root\n")
        assert Config.load_one(logger, p) == {"migrate_downtime": 0.3, "ssh": {"user": "root"}}

    def test_empty_file(self, tmp_path, logger):
        assert Config.load_one(logger, _write(tmp_path / "e.yaml", "")) == {}

    def test_top_level_must_be_mapping(self, tmp_path, logger):
        with pytest.raises(Fatal, match="must be a mapping"):
            Config.load_one(logger, _write(tmp_path / "l.yaml", "- a\n- b\n"))

    def test_invalid_yaml(self, tmp_path, logger):
        with pytest.raises(Fatal) as ei:
            Config.load_one(logger, _write(tmp_path / "bad.yaml", "a: [1, 2\n"))
        assert ei.value.code == 2
        assert logger.has("Invalid YAML", "error")

    def test_later_files_win_and_sections_merge(self, tmp_path, logger):
        a = _write(tmp_path / "10-base.yaml", "bwlimit: 1000\nssh: {user: root, port: 22}\n")
        b = _write(tmp_path / "20-site.yaml", "bwlimit: 2000\nssh: {port: 2222}\n")
        merged = Config.load_many(logger, [a, b])
        assert merged == {"bwlimit": 2000, "ssh": {"user": "root", "port": 2222}}


class TestExpand:
    def test_glob_is_sorted(self, tmp_path, logger):
        _write(tmp_path / "b.yaml", "")
        _write(tmp_path / "a.yaml", "")
        paths = Config.expand_configs(logger, [str(tmp_path / "*.yaml")])
        assert [p.name for p in paths] == ["a.yaml", "b.yaml"]

    def test_glob_without_matches(self, tmp_path, logger):
        with pytest.raises(Fatal, match="matched nothing"):
            Config.expand_configs(logger, [str(tmp_path / "*.yaml")])

    def test_missing_file(self, tmp_path, logger):
        with pytest.raises(Fatal, match="Config file not found"):
            Config.expand_configs(logger, [str(tmp_path / "nope.yaml")])


class TestApplyAsDefaults:
    def test_matching_dests_become_defaults(self, logger):
        parser = argparse.ArgumentParser()
        parser.add_argument("--node")
        sub = parser.add_subparsers(dest="cmd")
        mig = sub.add_parser("migrate")
        mig.add_argument("--bwlimit", type=int)

        Config.apply_as_defaults(logger, parser, {"node": "pve1", "bwlimit": 512, "ssh": {"user": "root"}})

        args = parser.parse_args(["migrate"])
        assert args.node == "pve1"
        assert args.bwlimit == 512
        assert not hasattr(args, "ssh")

    def test_cli_flag_overrides_config(self, logger):
        parser = argparse.ArgumentParser()
        parser.add_argument("--node")
        Config.apply_as_defaults(logger, parser, {"node": "pve1"})
        assert parser.parse_args(["--node", "pve2"]).node == "pve2"
