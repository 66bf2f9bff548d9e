"""
Tests for factctl.mcp.server — argument parsing and server assembly.
"""

from factctl.mcp.server import build_parser, create_server


class TestParser:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("FACTCTL_DB", raising=False)
        monkeypatch.delenv("FACTCTL_SKILLS_DIR", raising=False)
        args = build_parser().parse_args([])
        assert args.db == ".factctl/knowledge.db"
        assert args.skills_dir is None
        assert args.no_seed is False

    def test_env(self, monkeypatch):
        monkeypatch.setenv("FACTCTL_DB", "/tmp/x.db")
        assert build_parser().parse_args([]).db == "/tmp/x.db"


class TestCreateServer:
    def test_seeds_by_default(self, tmp_path):
        args = build_parser().parse_args([
            "--db", str(tmp_path / "k.db"),
            "--skills-dir", str(tmp_path / "skills"),
            "--audit-log", str(tmp_path / "audit.jsonl"),
        ])
        mcp, store = create_server(args)
        try:
            assert store.stats()["seed_version"] == 1
            assert store.get_config("freshness_default") == "168"
            assert (tmp_path / "skills" / "factctl-quickstart.md").is_file()
        finally:
            store.close()

    def test_no_seed(self, tmp_path):
        args = build_parser().parse_args([
            "--db", str(tmp_path / "k.db"), "--no-seed",
            "--audit-log", str(tmp_path / "audit.jsonl"),
        ])
        mcp, store = create_server(args)
        try:
            assert store.stats()["facts"] == 0
        finally:
            store.close()
