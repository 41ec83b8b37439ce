"""Boundary to the external build, package and install tooling.

Nothing here compiles or packages a kernel. The gateway checks that the
host can run the external pipeline, brings the branch working tree into the
shape the build plan asks for, hands the plan to the pipeline command
through environment variables, and reads back the kernel release and
source commit once the pipeline succeeds.

Environment contract passed to the pipeline command:

	CIP_BRANCH, CIP_BUILD_DIR, CIP_SOURCE_DIR, CIP_PKGBASE, CIP_FLAVOR,
	CIP_SOURCE_ACTION (clone/update/reuse), CIP_CLEAN_BUILD (0/1),
	CIP_SAVED_CONFIG (path or empty), CIP_USE_LOCALMODCONFIG (0/1),
	CIP_CONFIG_TWEAKS (scripts/config arguments), CCACHE_DIR,
	CC/HOSTCC when ccache is active, LSMOD when a profile is selected.
"""

# Standard Library
import glob
import os
import shlex
import shutil
import subprocess
import tempfile
from dataclasses import dataclass

# local repo modules
from cipkernel import build_cache


REQUIRED_TOOLS = (
	"git", "make", "gcc", "awk", "sed", "grep", "tar", "xz", "zstd", "bc",
	"perl", "bison", "flex", "openssl", "pahole", "ld", "dtc", "rsync",
	"cpio", "strip", "makepkg", "fakeroot", "kernel-install", "mkinitcpio",
)
CCACHE_SETTINGS = (
	"max_size=10G",
	"compression=true",
	"compression_level=1",
	"sloppiness=file_macro,time_macros,include_file_mtime,include_file_ctime",
)
PROFILE_SUFFIX = ".modules"
MERGED_PROFILE_NAME = "merged"
LSMOD_HEADER = "Module                  Size  Used by"

BOOT_HOOK_SCRIPT = """#!/bin/sh
set -eu
cmd="${1:-}"; kver="${2:-}"
[ "$cmd" = "add" ] || exit 0
[ "${KERNEL_INSTALL_LAYOUT:-}" = "bls" ] || exit 0
entries_dir="${KERNEL_INSTALL_BOOT_ROOT:-/boot}/loader/entries"
token="${KERNEL_INSTALL_ENTRY_TOKEN:-}"; [ -n "$token" ] || exit 0
for f in "$entries_dir/${token}-${kver}"*.conf; do
  [ -f "$f" ] || continue
  sed -i -E 's/^title .*/title Arch Linux (CIP)/' "$f"
done
"""


#============================================
class PreflightError(RuntimeError):
	"""
	Raised when the host cannot run a build (tools, privileges).
	"""


#============================================
class PipelineError(RuntimeError):
	"""
	Raised when source preparation or the external pipeline fails.
	"""


#============================================
@dataclass(frozen=True)
class PipelineResult:
	kernel_version: str
	commit: str
	config_path: str


#============================================
def run(cmd: list[str], **kwargs) -> subprocess.CompletedProcess:
	"""Run a command, checking return code by default."""
	kwargs.setdefault("check", True)
	return subprocess.run(cmd, **kwargs)


#============================================
def git(*args: str, check: bool = True, cwd: str | None = None) -> subprocess.CompletedProcess:
	"""Run a git command and return the result."""
	return subprocess.run(
		["git", *args],
		capture_output=True,
		text=True,
		check=check,
		cwd=cwd,
	)


#============================================
def check_required_tools(tools) -> list[str]:
	"""
	Return the tools that are not on PATH, in input order.
	"""
	return [tool for tool in tools if shutil.which(tool) is None]


#============================================
def required_tools(use_ccache: bool, pipeline_command) -> list[str]:
	tools = list(REQUIRED_TOOLS)
	if use_ccache:
		tools.append("ccache")
	if pipeline_command:
		tools.append(pipeline_command[0])
	return tools


#============================================
def ensure_not_root() -> None:
	"""
	Refuse to run as root; privileged steps go through sudo.
	"""
	if os.geteuid() == 0:
		raise PreflightError("Do not run as root. sudo is used only for system steps.")


#============================================
def setup_ccache(ccache_dir: str, base_dir: str, log_fn=None) -> str:
	"""
	Configure ccache under ccache_dir and return the compiler prefix.
	"""
	if shutil.which("ccache") is None:
		if log_fn is not None:
			log_fn("ccache requested but not installed; building without it.")
		return ""
	os.makedirs(ccache_dir, exist_ok=True)
	env = dict(os.environ, CCACHE_DIR=ccache_dir)
	settings = list(CCACHE_SETTINGS)
	if base_dir:
		settings.append(f"base_dir={base_dir}")
	for setting in settings:
		run(["ccache", f"--set-config={setting}"], env=env, capture_output=True, text=True)
	if log_fn is not None:
		log_fn(f"ccache configured in {ccache_dir}")
	return "ccache "


#============================================
def remote_head_sha(clone_url: str, branch: str) -> str:
	"""
	Return the remote head SHA of a branch, or "" when it cannot be read.
	"""
	try:
		result = git("ls-remote", clone_url, f"refs/heads/{branch}", check=False)
	except OSError:
		return ""
	if result.returncode != 0:
		return ""
	for line in result.stdout.splitlines():
		parts = line.split()
		if len(parts) == 2 and parts[1] == f"refs/heads/{branch}":
			return parts[0]
	return ""


#============================================
def prepare_source_tree(plan: build_cache.BuildPlan, clone_url: str, log_fn=None) -> None:
	"""
	Clone, fast-forward, or keep the working tree as the plan says.
	"""
	def log(message: str) -> None:
		if log_fn is not None:
			log_fn(message)

	action = plan.source_action
	try:
		if action is build_cache.SourceAction.CLONE:
			if os.path.isdir(plan.source_dir):
				log(f"Removing incomplete source tree {plan.source_dir}")
				shutil.rmtree(plan.source_dir)
			log(f"Cloning {plan.branch} into {plan.source_dir}")
			git("clone", "--depth", "1", "--branch", plan.branch, clone_url, plan.source_dir)
		elif action is build_cache.SourceAction.UPDATE:
			log(f"Updating existing source tree for {plan.branch}")
			git("fetch", "origin", plan.branch, cwd=plan.source_dir)
			git("checkout", plan.branch, cwd=plan.source_dir)
			git("pull", "--ff-only", cwd=plan.source_dir)
		else:
			log(f"Source tree for {plan.branch} is at the remote head; reusing it.")
	except subprocess.CalledProcessError as error:
		detail = (error.stderr or "").strip().splitlines()
		tail = detail[-1] if detail else str(error)
		raise PipelineError(f"Source {action.value} failed for {plan.branch}: {tail}") from error


#============================================
def sudo_install_text(text: str, dest_path: str, mode: str) -> None:
	"""
	Place text at a root-owned path through sudo install -Dm<mode>.
	"""
	fd, tmp_path = tempfile.mkstemp(prefix="cip-kernel-", suffix=".tmp")
	try:
		with os.fdopen(fd, "w", encoding="utf-8") as handle:
			handle.write(text)
		run(["sudo", "install", f"-Dm{mode}", tmp_path, dest_path])
	except subprocess.CalledProcessError as error:
		raise PreflightError(f"Cannot install {dest_path}: {error}") from error
	finally:
		if os.path.isfile(tmp_path):
			os.remove(tmp_path)


#============================================
def ensure_boot_hook(hook_path: str, log_fn=None) -> bool:
	"""
	Install the boot-entry relabeling hook when missing.

	Returns True when the hook was installed by this call.
	"""
	if os.path.isfile(hook_path) and os.access(hook_path, os.X_OK):
		return False
	sudo_install_text(BOOT_HOOK_SCRIPT, hook_path, "755")
	if log_fn is not None:
		log_fn(f"Installed boot hook {hook_path}")
	return True


#============================================
def flag_text(value: bool) -> str:
	return "1" if value else "0"


#============================================
def pipeline_environment(
	plan: build_cache.BuildPlan,
	ccache_dir: str,
	cc_prefix: str,
	base_env: dict | None = None,
) -> dict:
	"""
	Build the environment handed to the external pipeline.
	"""
	env = dict(os.environ if base_env is None else base_env)
	env.update({
		"CIP_BRANCH": plan.branch,
		"CIP_BUILD_DIR": plan.entry_dir,
		"CIP_SOURCE_DIR": plan.source_dir,
		"CIP_PKGBASE": plan.package_base,
		"CIP_FLAVOR": plan.flavor,
		"CIP_SOURCE_ACTION": plan.source_action.value,
		"CIP_CLEAN_BUILD": flag_text(plan.clean_build),
		"CIP_SAVED_CONFIG": plan.saved_config or "",
		"CIP_USE_LOCALMODCONFIG": flag_text(plan.use_localmodconfig),
		"CIP_CONFIG_TWEAKS": shlex.join(plan.config_tweaks),
	})
	if plan.use_ccache:
		env["CCACHE_DIR"] = ccache_dir
	if plan.use_ccache and cc_prefix:
		env["CC"] = f"{cc_prefix}gcc"
		env["HOSTCC"] = f"{cc_prefix}gcc"
	if plan.lsmod_profile:
		env["LSMOD"] = plan.lsmod_profile
	return env


#============================================
def read_kernel_release(source_dir: str) -> str:
	result = run(
		["make", "-s", "LOCALVERSION=", "kernelrelease"],
		cwd=source_dir,
		capture_output=True,
		text=True,
	)
	return result.stdout.strip()


#============================================
def read_head_commit(source_dir: str) -> str:
	return git("rev-parse", "HEAD", cwd=source_dir).stdout.strip()


#============================================
def run_pipeline(
	plan: build_cache.BuildPlan,
	command,
	ccache_dir: str,
	cc_prefix: str = "",
	log_fn=None,
) -> PipelineResult:
	"""
	Run the external pipeline and read back what it built.
	"""
	env = pipeline_environment(plan, ccache_dir, cc_prefix)
	if log_fn is not None:
		log_fn(f"Running pipeline: {shlex.join(command)}")
	try:
		run(list(command), cwd=plan.entry_dir, env=env)
		kernel_version = read_kernel_release(plan.source_dir)
		commit = read_head_commit(plan.source_dir)
	except (subprocess.CalledProcessError, OSError) as error:
		raise PipelineError(f"Build pipeline failed for {plan.branch}: {error}") from error
	if not kernel_version or not commit:
		raise PipelineError(f"Build pipeline for {plan.branch} left no kernel release or commit")
	return PipelineResult(
		kernel_version=kernel_version,
		commit=commit,
		config_path=os.path.join(plan.source_dir, ".config"),
	)


#============================================
def profile_path(profiles_dir: str, name: str) -> str:
	return os.path.join(profiles_dir, f"{name}{PROFILE_SUFFIX}")


#============================================
def save_hardware_profile(profiles_dir: str, name: str = "default") -> tuple[str, int]:
	"""
	Snapshot lsmod output as a named profile; returns path and module count.
	"""
	os.makedirs(profiles_dir, exist_ok=True)
	result = run(["lsmod"], capture_output=True, text=True)
	path = profile_path(profiles_dir, name)
	build_cache.atomic_write_text(path, result.stdout)
	module_count = max(0, len(result.stdout.splitlines()) - 1)
	return path, module_count


#============================================
def load_hardware_profile(profiles_dir: str, name: str = "default") -> str | None:
	"""
	Return the profile path when it exists.
	"""
	path = profile_path(profiles_dir, name)
	if os.path.isfile(path):
		return path
	return None


#============================================
def merge_hardware_profiles(profiles_dir: str) -> str | None:
	"""
	Union every saved profile into merged.modules; None when none exist.
	"""
	merged_path = profile_path(profiles_dir, MERGED_PROFILE_NAME)
	lines: set[str] = set()
	sources = 0
	for path in sorted(glob.glob(os.path.join(profiles_dir, f"*{PROFILE_SUFFIX}"))):
		if os.path.abspath(path) == os.path.abspath(merged_path):
			continue
		sources += 1
		with open(path, "r", encoding="utf-8", errors="replace") as handle:
			body = handle.read().splitlines()[1:]
		lines.update(line for line in body if line.strip())
	if sources == 0:
		return None
	text = "\n".join([LSMOD_HEADER, *sorted(lines)]) + "\n"
	build_cache.atomic_write_text(merged_path, text)
	return merged_path
