import json
import os
import shlex
import time
from dataclasses import dataclass

import yaml

from cipkernel import branch_catalog
from cipkernel import build_cache
from cipkernel import build_gateway


MODULES_ROOT = "/usr/lib/modules"
RETRIGGER_WINDOW_SECONDS = 24 * 60 * 60
PACMAN_HOOK_TEMPLATE = """[Trigger]
Operation = Install
Operation = Upgrade
Operation = Remove
Type = Package
Target = *

[Action]
Description = CIP kernel auto-update check
When = PostTransaction
NeedsTargets = False
Exec = {exec_line}
"""


#============================================
@dataclass(frozen=True)
class RunningKernel:
	release: str
	pkgbase: str
	source_commit: str


#============================================
@dataclass(frozen=True)
class UpdateDecision:
	run_build: bool
	reason: str
	branch: str = ""
	remote_sha: str = ""


#============================================
def read_marker(path: str) -> str:
	"""
	Read a one-line marker file, returning "" when missing.
	"""
	try:
		with open(path, "r", encoding="utf-8") as handle:
			return handle.read().strip()
	except OSError:
		return ""


#============================================
def read_running_kernel(release: str, modules_root: str = MODULES_ROOT) -> RunningKernel:
	"""
	Collect the package markers the packaged kernel leaves in its module dir.
	"""
	module_dir = os.path.join(modules_root, release)
	return RunningKernel(
		release=release,
		pkgbase=read_marker(os.path.join(module_dir, "pkgbase")),
		source_commit=read_marker(os.path.join(module_dir, "source_commit")),
	)


#============================================
def stamp_path(state_dir: str, branch: str) -> str:
	return os.path.join(state_dir, f"last_{branch_catalog.branch_safe_name(branch)}.json")


#============================================
def load_stamp(path: str) -> dict:
	"""
	Load the last attempt stamp; unreadable stamps count as empty.
	"""
	try:
		with open(path, "r", encoding="utf-8") as handle:
			payload = json.load(handle)
	except (OSError, ValueError):
		return {}
	if not isinstance(payload, dict):
		return {}
	return payload


#============================================
def write_stamp(path: str, remote_sha: str, now_epoch: int | None = None) -> None:
	"""
	Record that a build was attempted for remote_sha.
	"""
	if now_epoch is None:
		now_epoch = int(time.time())
	os.makedirs(os.path.dirname(path), exist_ok=True)
	payload = {"last_sha": remote_sha, "last_time": now_epoch}
	build_cache.atomic_write_text(path, json.dumps(payload, sort_keys=True) + "\n")


#============================================
def decide_update(
	kernel: RunningKernel,
	remote_sha_fn,
	cache: build_cache.BuildCache,
	state_dir: str,
	now_epoch: int,
) -> UpdateDecision:
	"""
	Decide whether the running CIP kernel should be rebuilt.

	remote_sha_fn(branch) returns the remote head SHA or "".
	"""
	branch = branch_catalog.branch_for_kernel_release(kernel.release, kernel.pkgbase)
	if not branch:
		return UpdateDecision(False, f"running kernel {kernel.release} is not a CIP package")
	remote_sha = remote_sha_fn(branch)
	if not remote_sha:
		return UpdateDecision(False, f"remote head for {branch} unavailable", branch)
	local_sha = kernel.source_commit
	if not local_sha:
		record = cache.load_record(branch)
		if record is not None:
			local_sha = record.commit
	if local_sha and local_sha == remote_sha:
		return UpdateDecision(False, f"{branch} already at {remote_sha[:12]}", branch, remote_sha)
	stamp = load_stamp(stamp_path(state_dir, branch))
	last_time = stamp.get("last_time", 0)
	if not isinstance(last_time, int):
		last_time = 0
	if stamp.get("last_sha") == remote_sha and now_epoch - last_time < RETRIGGER_WINDOW_SECONDS:
		return UpdateDecision(
			False,
			f"{branch} build for {remote_sha[:12]} already attempted in the last 24h",
			branch,
			remote_sha,
		)
	return UpdateDecision(True, f"{branch} moved to {remote_sha[:12]}", branch, remote_sha)


#============================================
def builder_environment(options, default_profile: str | None) -> dict:
	"""
	Variables the updater pins for the build so it uses the shared cache paths.
	"""
	env_vars = {
		"CCACHE_DIR": options.ccache_dir,
		"BUILD_CACHE_DIR": options.build_cache_dir,
		"CONFIG_CACHE_DIR": options.config_cache_dir,
	}
	profile = options.lsmod_profile or default_profile
	if profile:
		env_vars["LSMOD"] = profile
	return env_vars


#============================================
def builder_command(
	python: str,
	builder_path: str,
	settings_path: str,
	branch: str,
	owner: str = "",
	env_vars: dict | None = None,
) -> list[str]:
	"""
	Command line that rebuilds one branch, optionally as another user.

	Rebase branches are hidden from the default catalog, so the builder is
	told to include them when the running kernel came from one.
	"""
	command = [python, builder_path, "--settings", settings_path, "--branch", branch]
	if branch.endswith("-rebase"):
		command.append("--include-rebase")
	if not owner:
		return command
	assignments = [f"{name}={value}" for name, value in sorted((env_vars or {}).items())]
	return ["sudo", "-u", owner, "env", *assignments, *command]


#============================================
def render_pacman_hook(exec_command: list[str]) -> str:
	return PACMAN_HOOK_TEMPLATE.format(exec_line=shlex.join(exec_command))


#============================================
def render_updater_settings(options, owner: str) -> str:
	"""
	Settings file for the root-run updater with every path made absolute.
	"""
	payload = {
		"catalog": {
			"base_url": options.base_url,
			"clone_url": options.clone_url,
		},
		"cache": {
			"ccache_dir": os.path.abspath(options.ccache_dir),
			"build_cache_dir": os.path.abspath(options.build_cache_dir),
			"config_cache_dir": os.path.abspath(options.config_cache_dir),
			"profiles_dir": os.path.abspath(options.profiles_dir),
		},
		"build": {
			"pipeline_command": list(options.pipeline_command),
			"boot_hook_path": options.boot_hook_path,
		},
		"updater": {
			"build_owner": owner,
			"state_dir": options.updater_state_dir,
			"hook_path": options.updater_hook_path,
			"config_path": options.updater_config_path,
		},
	}
	header = "# cip-kernel auto-updater settings\n"
	return header + yaml.safe_dump(payload, sort_keys=False)


#============================================
def install_updater(options, owner: str, exec_command: list[str], log_fn=None) -> tuple[str, str]:
	"""
	Install the updater settings and the pacman PostTransaction hook.

	Returns the settings path and the hook path.
	"""
	if not owner or owner == "root":
		raise build_gateway.PreflightError("The updater needs a non-root build owner.")
	build_gateway.sudo_install_text(
		render_updater_settings(options, owner),
		options.updater_config_path,
		"644",
	)
	build_gateway.sudo_install_text(
		render_pacman_hook(exec_command),
		options.updater_hook_path,
		"644",
	)
	if log_fn is not None:
		log_fn(f"Installed {options.updater_hook_path} and {options.updater_config_path}")
	return options.updater_config_path, options.updater_hook_path
