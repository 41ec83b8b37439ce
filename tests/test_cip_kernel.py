import argparse
import json
import os
import sys
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "pipeline"))

import cip_kernel
from cipkernel import autoupdate
from cipkernel import build_cache
from cipkernel import build_gateway
from cipkernel import gitiles_client


BRANCH = "linux-6.1.y-cip"
REMOTE_SHA = "abcdefabcdefabcdefabcdefabcdefabcdefabcd"
REFS_LISTING = (
	"linux-4.19.y-cip\nlinux-6.1.y-cip\nlinux-6.1.y-cip-rt\n"
	"linux-6.1.y-cip-rebase\nlinux-6.12.y-cip\n"
)
WIKI_TABLE = (
	"| SLTS v6.1 | Linux 6.1 | 2023-07-14 | 2033-08 | |\n"
	"| SLTS v4.19 | Linux 4.19 | 2019-01-11 | 2029-01 | |\n"
)
OPTION_ENV_NAMES = (
	"THRESHOLD_DAYS", "INCLUDE_REBASE", "CCACHE_DIR", "BUILD_CACHE_DIR",
	"CONFIG_CACHE_DIR", "LSMOD_PROFILES_DIR", "USE_CCACHE", "USE_LOCALMODCONFIG",
	"INCREMENTAL_BUILD", "DEBUG_SYMBOLS", "LSMOD", "CIP_PIPELINE_COMMAND", "CIP_BUILD_OWNER",
)


#============================================
class FakeClient:
	"""
	Stands in for GitilesClient; 4.19 is stale, the rest committed yesterday.
	"""

	def __init__(self, base_url, timeout_seconds=20, max_workers=8, log_fn=None):
		self.base_url = base_url

	def fetch_refs_listing(self) -> str:
		return REFS_LISTING

	def fetch_text(self, url: str, context: str) -> str:
		return WIKI_TABLE

	def fetch_head_epochs(self, branches: list[str]) -> dict[str, int]:
		now = int(time.time())
		epochs = {branch: now - 86400 for branch in branches}
		epochs["linux-4.19.y-cip"] = now - 400 * 86400
		return epochs

	def api_usage_snapshot(self) -> dict:
		return {"api_call_count": 0, "api_calls_by_context": {}, "failure_count": 0}


#============================================
@pytest.fixture
def workspace(tmp_path, monkeypatch):
	"""
	Isolated environment with cache directories under tmp_path.
	"""
	for name in OPTION_ENV_NAMES:
		monkeypatch.delenv(name, raising=False)
	monkeypatch.setenv("BUILD_CACHE_DIR", str(tmp_path / "builds"))
	monkeypatch.setenv("CONFIG_CACHE_DIR", str(tmp_path / "config"))
	monkeypatch.setenv("CCACHE_DIR", str(tmp_path / "ccache"))
	monkeypatch.setattr(cip_kernel.gitiles_client, "GitilesClient", FakeClient)
	return tmp_path


#============================================
def run_main(monkeypatch, workspace, *extra_args) -> None:
	argv = ["cip_kernel.py", "--settings", str(workspace / "missing.yaml"), *extra_args]
	monkeypatch.setattr(sys, "argv", argv)
	cip_kernel.main()


#============================================
def stub_build(monkeypatch, pipeline_fn) -> list:
	"""
	Replace host-touching steps; returns the list of plans handed to the pipeline.
	"""
	plans = []
	monkeypatch.setattr(cip_kernel, "preflight", lambda options: "")
	monkeypatch.setattr(build_gateway, "remote_head_sha", lambda clone_url, branch: REMOTE_SHA)
	monkeypatch.setattr(build_gateway, "prepare_source_tree", lambda plan, clone_url, log_fn=None: None)

	def fake_pipeline(plan, command, ccache_dir, cc_prefix="", log_fn=None):
		plans.append(plan)
		return pipeline_fn(plan)

	monkeypatch.setattr(build_gateway, "run_pipeline", fake_pipeline)
	return plans


#============================================
def test_json_output_is_parseable(workspace, monkeypatch, capsys) -> None:
	"""
	With --json, stdout carries only the JSON rows; progress goes to stderr.
	"""
	run_main(monkeypatch, workspace, "--json", "--list-only")
	captured = capsys.readouterr()
	rows = json.loads(captured.out)
	assert [row["branch"] for row in rows] == [
		"linux-6.1.y-cip",
		"linux-4.19.y-cip",
		"linux-6.1.y-cip-rt",
		"linux-6.12.y-cip",
	]
	assert all("rebase" not in row["branch"] for row in rows)
	by_name = {row["branch"]: row for row in rows}
	assert by_name["linux-6.1.y-cip"]["eol"] == "2033-08"
	assert by_name["linux-4.19.y-cip"]["status"] == "STALE"
	assert by_name["linux-6.12.y-cip"]["eol"] == "UNKNOWN"
	assert "Catalog:" in captured.err


#============================================
def test_json_without_branch_does_not_prompt(workspace, monkeypatch, capsys) -> None:
	def no_prompt(active):
		raise AssertionError("prompted")

	monkeypatch.setattr(cip_kernel, "prompt_for_branch", no_prompt)
	run_main(monkeypatch, workspace, "--json")
	assert isinstance(json.loads(capsys.readouterr().out), list)


#============================================
def test_resolve_run_options_precedence(tmp_path, monkeypatch) -> None:
	"""
	Flag beats environment, environment beats settings.yaml.
	"""
	for name in OPTION_ENV_NAMES:
		monkeypatch.delenv(name, raising=False)
	settings_path = tmp_path / "settings.yaml"
	settings_path.write_text("catalog:\n  threshold_days: 90\n", encoding="utf-8")

	def options_for(threshold_flag: int):
		args = argparse.Namespace(settings=str(settings_path), threshold_days=threshold_flag, include_rebase=False)
		return cip_kernel.resolve_run_options(args)

	assert options_for(0).threshold_days == 90
	monkeypatch.setenv("THRESHOLD_DAYS", "60")
	assert options_for(0).threshold_days == 60
	assert options_for(30).threshold_days == 30


#============================================
def test_apply_profile_args(workspace) -> None:
	options = cip_kernel.resolve_run_options(
		argparse.Namespace(settings=str(workspace / "missing.yaml"), threshold_days=0, include_rebase=False)
	)
	os.makedirs(options.profiles_dir)
	laptop = os.path.join(options.profiles_dir, "laptop.modules")
	with open(laptop, "w", encoding="utf-8") as handle:
		handle.write(f"{build_gateway.LSMOD_HEADER}\nxhci_pci 20480 0\n")

	loaded = cip_kernel.apply_profile_args(argparse.Namespace(load_profile="laptop", merge_profiles=False), options)
	assert loaded.lsmod_profile == laptop
	missing = cip_kernel.apply_profile_args(argparse.Namespace(load_profile="desk", merge_profiles=False), options)
	assert missing.lsmod_profile == ""
	merged = cip_kernel.apply_profile_args(argparse.Namespace(load_profile="", merge_profiles=True), options)
	assert merged.lsmod_profile == os.path.join(options.profiles_dir, "merged.modules")


#============================================
def test_branch_override_builds_and_records(workspace, monkeypatch) -> None:
	"""
	--branch skips the prompt, builds, and records the result.
	"""
	plans = stub_build(
		monkeypatch,
		lambda plan: build_gateway.PipelineResult("6.1.112-cip30", REMOTE_SHA, os.path.join(plan.source_dir, ".config")),
	)
	run_main(monkeypatch, workspace, "--branch", "linux-4.19.y-cip")
	assert plans[0].branch == "linux-4.19.y-cip"
	assert plans[0].source_action is build_cache.SourceAction.CLONE
	record = build_cache.BuildCache(str(workspace / "builds")).load_record("linux-4.19.y-cip")
	assert record.commit == REMOTE_SHA
	assert record.kernel_version == "6.1.112-cip30"


#============================================
def test_unknown_branch_override_exits(workspace, monkeypatch) -> None:
	with pytest.raises(SystemExit) as excinfo:
		run_main(monkeypatch, workspace, "--branch", "linux-3.2.y-cip")
	assert excinfo.value.code == 1


#============================================
def test_pipeline_failure_keeps_previous_record(workspace, monkeypatch) -> None:
	"""
	A failed build exits 1, leaves build_state.json byte-identical and releases the lock.
	"""
	cache = build_cache.BuildCache(str(workspace / "builds"))
	cache.commit_build(BRANCH, "6.1.100-cip25", "0ld0ld")
	with open(cache.state_path(BRANCH), "rb") as handle:
		before = handle.read()

	def failing(plan):
		raise build_gateway.PipelineError("make failed")

	stub_build(monkeypatch, failing)
	with pytest.raises(SystemExit) as excinfo:
		run_main(monkeypatch, workspace, "--branch", BRANCH)
	assert excinfo.value.code == 1
	with open(cache.state_path(BRANCH), "rb") as handle:
		assert handle.read() == before
	assert not os.path.exists(os.path.join(cache.entry_dir(BRANCH), build_cache.LOCK_FILENAME))


#============================================
def test_record_write_failure_exits_cleanly(workspace, monkeypatch) -> None:
	stub_build(
		monkeypatch,
		lambda plan: build_gateway.PipelineResult("6.1.112-cip30", REMOTE_SHA, ""),
	)

	def disk_full(self, branch, kernel_version, commit, config_path=None):
		raise OSError("No space left on device")

	monkeypatch.setattr(build_cache.BuildCache, "commit_build", disk_full)
	with pytest.raises(SystemExit) as excinfo:
		run_main(monkeypatch, workspace, "--branch", BRANCH)
	assert excinfo.value.code == 1


#============================================
def test_updater_command_reaches_rebase_branch(workspace, monkeypatch) -> None:
	"""
	The command the updater issues for a rebase kernel is accepted by the builder.
	"""
	branch = "linux-6.1.y-cip-rebase"
	plans = stub_build(
		monkeypatch,
		lambda plan: build_gateway.PipelineResult("6.1.112-cip30", REMOTE_SHA, ""),
	)
	command = autoupdate.builder_command(
		sys.executable,
		"cip_kernel.py",
		str(workspace / "missing.yaml"),
		branch,
	)
	monkeypatch.setattr(sys, "argv", command[1:])
	cip_kernel.main()
	assert plans[0].branch == branch
	assert plans[0].package_base == "linux-cip-rebase"


#============================================
def test_catalog_failure_exits(workspace, monkeypatch) -> None:
	class DownClient(FakeClient):
		def fetch_refs_listing(self) -> str:
			raise gitiles_client.RemoteFetchError("timeout")

	monkeypatch.setattr(cip_kernel.gitiles_client, "GitilesClient", DownClient)
	with pytest.raises(SystemExit) as excinfo:
		run_main(monkeypatch, workspace, "--list-only")
	assert excinfo.value.code == 1
