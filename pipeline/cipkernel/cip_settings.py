import os
import shlex
from dataclasses import dataclass

import yaml


DEFAULT_BASE_URL = "https://kernel.googlesource.com/pub/scm/linux/kernel/git/cip/linux-cip"
DEFAULT_CLONE_URL = "https://git.kernel.org/pub/scm/linux/kernel/git/cip/linux-cip.git"
DEFAULT_EOL_URL = "https://wiki.linuxfoundation.org/civilinfrastructureplatform/start?do=edit"
DEFAULT_THRESHOLD_DAYS = 120
DEFAULT_PIPELINE_COMMAND = "cip-kernel-pipeline"
DEFAULT_BOOT_HOOK_PATH = "/etc/kernel/install.d/95-cip-title.install"
DEFAULT_UPDATER_STATE_DIR = "/var/lib/cip-kernel"
DEFAULT_UPDATER_HOOK_PATH = "/etc/pacman.d/hooks/cip-kernel-autoupdate.hook"
DEFAULT_UPDATER_CONFIG_PATH = "/etc/cip-kernel/updater.yaml"


#============================================
@dataclass(frozen=True)
class KernelOptions:
	"""
	Resolved run options after settings, environment and flag merging.
	"""
	threshold_days: int
	include_rebase: bool
	base_url: str
	clone_url: str
	eol_url: str
	ccache_dir: str
	build_cache_dir: str
	config_cache_dir: str
	profiles_dir: str
	use_ccache: bool
	use_localmodconfig: bool
	incremental: bool
	debug_symbols: bool
	lsmod_profile: str
	fetch_workers: int
	fetch_timeout_seconds: int
	pipeline_command: tuple[str, ...]
	boot_hook_path: str
	updater_state_dir: str
	updater_hook_path: str
	updater_config_path: str
	build_owner: str


#============================================
def get_repo_root() -> str:
	"""
	Return repository root based on this module location.
	"""
	module_dir = os.path.dirname(os.path.abspath(__file__))
	return os.path.dirname(os.path.dirname(module_dir))


#============================================
def resolve_settings_path(path_text: str) -> str:
	"""
	Resolve settings path against cwd first, then repo root.
	"""
	if os.path.isabs(path_text):
		return path_text
	cwd_candidate = os.path.abspath(path_text)
	if os.path.isfile(cwd_candidate):
		return cwd_candidate
	repo_candidate = os.path.join(get_repo_root(), path_text)
	return os.path.abspath(repo_candidate)


#============================================
def load_settings(path_text: str) -> tuple[dict, str]:
	"""
	Load YAML settings dict and return it with resolved path.
	"""
	resolved_path = resolve_settings_path(path_text)
	if not os.path.isfile(resolved_path):
		return {}, resolved_path
	with open(resolved_path, "r", encoding="utf-8") as handle:
		data = yaml.safe_load(handle.read())
	if data is None:
		return {}, resolved_path
	if not isinstance(data, dict):
		raise RuntimeError(f"Settings file must contain a mapping: {resolved_path}")
	return data, resolved_path


#============================================
def get_nested_value(settings: dict, keys: list[str], default_value):
	"""
	Read nested mapping value by key path.
	"""
	current = settings
	for key in keys:
		if not isinstance(current, dict):
			return default_value
		if key not in current:
			return default_value
		current = current[key]
	return current


#============================================
def get_setting_str(settings: dict, keys: list[str], default_value: str) -> str:
	"""
	Read a string setting from nested path with fallback.
	"""
	value = get_nested_value(settings, keys, default_value)
	if value is None:
		return default_value
	return str(value).strip()


#============================================
def get_setting_int(settings: dict, keys: list[str], default_value: int) -> int:
	"""
	Read an integer setting from nested path with fallback.
	"""
	value = get_nested_value(settings, keys, default_value)
	if value is None:
		return default_value
	try:
		return int(value)
	except ValueError as error:
		raise RuntimeError(f"Invalid integer for setting path {'.'.join(keys)}: {value}") from error


#============================================
def parse_bool_text(text: str, label: str) -> bool:
	"""
	Parse one boolean flag text such as 1/0, yes/no, on/off.
	"""
	value = text.strip().lower()
	if value in {"1", "true", "yes", "on"}:
		return True
	if value in {"0", "false", "no", "off"}:
		return False
	raise RuntimeError(f"Invalid boolean for {label}: {text}")


#============================================
def get_setting_bool(settings: dict, keys: list[str], default_value: bool) -> bool:
	"""
	Read a boolean setting from nested path with fallback.
	"""
	value = get_nested_value(settings, keys, default_value)
	if isinstance(value, bool):
		return value
	if isinstance(value, str):
		return parse_bool_text(value, f"setting path {'.'.join(keys)}")
	if isinstance(value, int):
		return value != 0
	if value is None:
		return default_value
	raise RuntimeError(f"Invalid boolean for setting path {'.'.join(keys)}: {value}")


#============================================
def env_str(environ: dict, name: str, default_value: str) -> str:
	"""
	Return a non-empty environment value or the fallback.
	"""
	value = (environ.get(name) or "").strip()
	if value:
		return value
	return default_value


#============================================
def env_int(environ: dict, name: str, default_value: int) -> int:
	"""
	Return an integer environment value or the fallback.
	"""
	value = (environ.get(name) or "").strip()
	if not value:
		return default_value
	try:
		return int(value)
	except ValueError as error:
		raise RuntimeError(f"Invalid integer for environment {name}: {value}") from error


#============================================
def env_bool(environ: dict, name: str, default_value: bool) -> bool:
	"""
	Return a boolean environment value (1/0 style) or the fallback.
	"""
	value = (environ.get(name) or "").strip()
	if not value:
		return default_value
	return parse_bool_text(value, f"environment {name}")


#============================================
def parse_command(value) -> tuple[str, ...]:
	"""
	Normalize a command setting given as a string or list.
	"""
	if isinstance(value, (list, tuple)):
		return tuple(str(part) for part in value if str(part).strip())
	return tuple(shlex.split(str(value or "")))


#============================================
def resolve_options(settings: dict, environ: dict | None = None) -> KernelOptions:
	"""
	Merge settings.yaml values with environment overrides.

	Environment names follow the historic builder variables
	(THRESHOLD_DAYS, INCLUDE_REBASE, CCACHE_DIR, BUILD_CACHE_DIR, ...).
	INCLUDE_REBASE enables rebase branches for any non-empty value.
	"""
	if environ is None:
		environ = dict(os.environ)
	home = os.path.expanduser("~")

	threshold_days = env_int(
		environ,
		"THRESHOLD_DAYS",
		get_setting_int(settings, ["catalog", "threshold_days"], DEFAULT_THRESHOLD_DAYS),
	)
	if threshold_days < 1:
		raise RuntimeError(f"threshold_days must be >= 1; got {threshold_days}")

	include_rebase = get_setting_bool(settings, ["catalog", "include_rebase"], False)
	if (environ.get("INCLUDE_REBASE") or "").strip():
		include_rebase = True

	ccache_dir = env_str(
		environ,
		"CCACHE_DIR",
		get_setting_str(settings, ["cache", "ccache_dir"], os.path.join(home, ".ccache-cip")),
	)
	build_cache_dir = env_str(
		environ,
		"BUILD_CACHE_DIR",
		get_setting_str(settings, ["cache", "build_cache_dir"], os.path.join(home, ".cache", "cip-builds")),
	)
	config_cache_dir = env_str(
		environ,
		"CONFIG_CACHE_DIR",
		get_setting_str(settings, ["cache", "config_cache_dir"], os.path.join(home, ".config", "cip-kernel")),
	)
	profiles_dir = env_str(
		environ,
		"LSMOD_PROFILES_DIR",
		get_setting_str(settings, ["cache", "profiles_dir"], os.path.join(config_cache_dir, "profiles")),
	)

	pipeline_value = get_nested_value(settings, ["build", "pipeline_command"], DEFAULT_PIPELINE_COMMAND)
	pipeline_command = parse_command(env_str(environ, "CIP_PIPELINE_COMMAND", "") or pipeline_value)
	if not pipeline_command:
		raise RuntimeError("build.pipeline_command must not be empty")

	fetch_workers = get_setting_int(settings, ["catalog", "fetch_workers"], 8)
	if fetch_workers < 1:
		raise RuntimeError(f"catalog.fetch_workers must be >= 1; got {fetch_workers}")

	return KernelOptions(
		threshold_days=threshold_days,
		include_rebase=include_rebase,
		base_url=get_setting_str(settings, ["catalog", "base_url"], DEFAULT_BASE_URL).rstrip("/"),
		clone_url=get_setting_str(settings, ["catalog", "clone_url"], DEFAULT_CLONE_URL),
		eol_url=get_setting_str(settings, ["eol", "url"], DEFAULT_EOL_URL),
		ccache_dir=os.path.expanduser(ccache_dir),
		build_cache_dir=os.path.expanduser(build_cache_dir),
		config_cache_dir=os.path.expanduser(config_cache_dir),
		profiles_dir=os.path.expanduser(profiles_dir),
		use_ccache=env_bool(environ, "USE_CCACHE", get_setting_bool(settings, ["build", "use_ccache"], True)),
		use_localmodconfig=env_bool(
			environ,
			"USE_LOCALMODCONFIG",
			get_setting_bool(settings, ["build", "use_localmodconfig"], True),
		),
		incremental=env_bool(
			environ,
			"INCREMENTAL_BUILD",
			get_setting_bool(settings, ["build", "incremental"], True),
		),
		debug_symbols=env_bool(
			environ,
			"DEBUG_SYMBOLS",
			get_setting_bool(settings, ["build", "debug_symbols"], False),
		),
		lsmod_profile=env_str(environ, "LSMOD", ""),
		fetch_workers=fetch_workers,
		fetch_timeout_seconds=get_setting_int(settings, ["catalog", "fetch_timeout_seconds"], 20),
		pipeline_command=pipeline_command,
		boot_hook_path=get_setting_str(settings, ["build", "boot_hook_path"], DEFAULT_BOOT_HOOK_PATH),
		updater_state_dir=get_setting_str(
			settings,
			["updater", "state_dir"],
			DEFAULT_UPDATER_STATE_DIR,
		),
		updater_hook_path=get_setting_str(settings, ["updater", "hook_path"], DEFAULT_UPDATER_HOOK_PATH),
		updater_config_path=get_setting_str(settings, ["updater", "config_path"], DEFAULT_UPDATER_CONFIG_PATH),
		build_owner=env_str(environ, "CIP_BUILD_OWNER", get_setting_str(settings, ["updater", "build_owner"], "")),
	)
