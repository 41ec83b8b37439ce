import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "pipeline"))

from cipkernel import cip_settings


#============================================
def test_load_settings_missing_file(tmp_path) -> None:
	"""
	Missing settings file should return empty settings.
	"""
	settings, resolved_path = cip_settings.load_settings(str(tmp_path / "missing.yaml"))
	assert settings == {}
	assert resolved_path.endswith("missing.yaml")


#============================================
def test_load_settings_reads_yaml(tmp_path) -> None:
	"""
	YAML settings should be parsed into nested mapping values.
	"""
	settings_path = tmp_path / "settings.yaml"
	settings_path.write_text(
		"catalog:\n"
		"  threshold_days: 90\n"
		"  include_rebase: yes\n"
		"build:\n"
		"  pipeline_command: [makepkg-cip, --noconfirm]\n",
		encoding="utf-8",
	)
	settings, _ = cip_settings.load_settings(str(settings_path))
	assert cip_settings.get_setting_int(settings, ["catalog", "threshold_days"], 120) == 90
	assert cip_settings.get_setting_bool(settings, ["catalog", "include_rebase"], False) is True
	options = cip_settings.resolve_options(settings, environ={})
	assert options.threshold_days == 90
	assert options.include_rebase is True
	assert options.pipeline_command == ("makepkg-cip", "--noconfirm")


#============================================
def test_load_settings_rejects_non_mapping(tmp_path) -> None:
	"""
	A YAML list at top level is a settings error.
	"""
	settings_path = tmp_path / "settings.yaml"
	settings_path.write_text("- one\n- two\n", encoding="utf-8")
	with pytest.raises(RuntimeError):
		cip_settings.load_settings(str(settings_path))


#============================================
def test_get_setting_int_invalid_value_raises() -> None:
	"""
	Invalid integer setting should raise RuntimeError.
	"""
	settings = {"catalog": {"threshold_days": "abc"}}
	with pytest.raises(RuntimeError):
		cip_settings.get_setting_int(settings, ["catalog", "threshold_days"], 120)


#============================================
def test_resolve_options_defaults() -> None:
	"""
	Empty settings and environment give the documented defaults.
	"""
	options = cip_settings.resolve_options({}, environ={})
	home = os.path.expanduser("~")
	assert options.threshold_days == 120
	assert options.include_rebase is False
	assert options.use_ccache is True
	assert options.use_localmodconfig is True
	assert options.incremental is True
	assert options.debug_symbols is False
	assert options.ccache_dir == os.path.join(home, ".ccache-cip")
	assert options.build_cache_dir == os.path.join(home, ".cache", "cip-builds")
	assert options.config_cache_dir == os.path.join(home, ".config", "cip-kernel")
	assert options.profiles_dir == os.path.join(home, ".config", "cip-kernel", "profiles")
	assert options.pipeline_command == ("cip-kernel-pipeline",)
	assert options.base_url.endswith("/cip/linux-cip")


#============================================
def test_resolve_options_environment_overrides_settings() -> None:
	"""
	Environment values win over settings.yaml values.
	"""
	settings = {
		"catalog": {"threshold_days": 90},
		"build": {"use_ccache": True, "debug_symbols": False},
		"cache": {"build_cache_dir": "/srv/builds"},
	}
	environ = {
		"THRESHOLD_DAYS": "30",
		"USE_CCACHE": "0",
		"DEBUG_SYMBOLS": "1",
		"INCREMENTAL_BUILD": "0",
		"BUILD_CACHE_DIR": "/tmp/cip-builds",
		"CONFIG_CACHE_DIR": "/tmp/cip-config",
		"LSMOD": "/tmp/profile.modules",
	}
	options = cip_settings.resolve_options(settings, environ=environ)
	assert options.threshold_days == 30
	assert options.use_ccache is False
	assert options.debug_symbols is True
	assert options.incremental is False
	assert options.build_cache_dir == "/tmp/cip-builds"
	assert options.profiles_dir == "/tmp/cip-config/profiles"
	assert options.lsmod_profile == "/tmp/profile.modules"


#============================================
def test_include_rebase_any_non_empty_value() -> None:
	"""
	INCLUDE_REBASE is a presence flag; unset or empty keeps rebase excluded.
	"""
	assert cip_settings.resolve_options({}, environ={"INCLUDE_REBASE": "1"}).include_rebase is True
	assert cip_settings.resolve_options({}, environ={"INCLUDE_REBASE": "yes"}).include_rebase is True
	assert cip_settings.resolve_options({}, environ={"INCLUDE_REBASE": ""}).include_rebase is False
	assert cip_settings.resolve_options({}, environ={}).include_rebase is False


#============================================
def test_empty_boolean_environment_keeps_default() -> None:
	"""
	USE_CCACHE= behaves like unset.
	"""
	options = cip_settings.resolve_options({}, environ={"USE_CCACHE": ""})
	assert options.use_ccache is True


#============================================
def test_invalid_environment_values_raise() -> None:
	"""
	Garbage in numeric or boolean variables is a settings error.
	"""
	with pytest.raises(RuntimeError):
		cip_settings.resolve_options({}, environ={"USE_CCACHE": "maybe"})
	with pytest.raises(RuntimeError):
		cip_settings.resolve_options({}, environ={"THRESHOLD_DAYS": "soon"})
	with pytest.raises(RuntimeError):
		cip_settings.resolve_options({}, environ={"THRESHOLD_DAYS": "0"})


#============================================
def test_build_owner_and_updater_paths() -> None:
	"""
	The updater build owner comes from settings, overridable by environment.
	"""
	settings = {"updater": {"build_owner": "builder", "hook_path": "/tmp/hooks/cip.hook"}}
	options = cip_settings.resolve_options(settings, environ={})
	assert options.build_owner == "builder"
	assert options.updater_hook_path == "/tmp/hooks/cip.hook"
	assert options.updater_config_path == cip_settings.DEFAULT_UPDATER_CONFIG_PATH
	assert cip_settings.resolve_options(settings, environ={"CIP_BUILD_OWNER": "ops"}).build_owner == "ops"
	assert cip_settings.resolve_options({}, environ={}).build_owner == ""
