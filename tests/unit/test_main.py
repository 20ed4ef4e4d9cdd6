"""
Unit tests for the command line entry point.
"""
import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from config import PlannerConfig
from main import build_parser, run_command


class TestCommandLine:
    def test_parser(self):
        args = build_parser().parse_args(["plan", "Add export", "--project-path", "/work/app"])
        assert (args.command, args.description, args.project_path) == ("plan", "Add export", "/work/app")

        args = build_parser().parse_args(["complete", "f1", "t1"])
        assert (args.feature_id, args.task_id) == ("f1", "t1")

    @pytest.mark.asyncio
    async def test_plan_without_model_exits_nonzero(self, tmp_path):
        """Planning errors are logged and turned into exit code 1."""
        config = PlannerConfig(db_path=str(tmp_path / "cli.db"))
        args = build_parser().parse_args(["plan", "Add export"])

        assert await run_command(args, config) == 1

    @pytest.mark.asyncio
    async def test_next_for_unknown_feature(self, tmp_path, capsys):
        config = PlannerConfig(db_path=str(tmp_path / "cli.db"))
        args = build_parser().parse_args(["next", "missing"])

        assert await run_command(args, config) == 1
        assert "No tasks found for feature ID missing" in capsys.readouterr().out
