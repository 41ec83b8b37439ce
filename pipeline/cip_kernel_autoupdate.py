#!/usr/bin/env python3
"""Rebuild the running CIP kernel when its branch moved upstream.

Runs from a pacman PostTransaction hook (see --install-hook) or a timer.
Exits 0 whenever there is nothing to do; the build itself is delegated to
cip_kernel.py --branch, run as the configured build owner when the updater
itself runs as root.
"""

import argparse
import os
import platform
import pwd
import subprocess
import sys
import time
from datetime import datetime

try:
	import rich.console
except ModuleNotFoundError as error:
	raise RuntimeError(
		"Missing dependency: rich. Install with: pip install -e ."
	) from error

from cipkernel import autoupdate
from cipkernel import build_cache
from cipkernel import build_gateway
from cipkernel import cip_settings


CONSOLE = rich.console.Console(stderr=True)
BUILDER_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "cip_kernel.py")


#============================================
def log_step(message: str, style: str = "cyan") -> None:
	"""
	Print one timestamped progress line.
	"""
	now_text = datetime.now().strftime("%H:%M:%S")
	CONSOLE.print(f"[cip_kernel_autoupdate {now_text}] {message}", style=style, highlight=False)


#============================================
def parse_args() -> argparse.Namespace:
	parser = argparse.ArgumentParser(description=__doc__)
	parser.add_argument(
		"--settings",
		default="settings.yaml",
		help="YAML settings path for defaults.",
	)
	parser.add_argument(
		"--release",
		default="",
		help="Kernel release to check (default: running kernel).",
	)
	parser.add_argument(
		"--dry-run",
		action="store_true",
		help="Report the decision without building.",
	)
	parser.add_argument(
		"--install-hook",
		action="store_true",
		help="Install the updater settings and pacman hook, then exit.",
	)
	return parser.parse_args()


#============================================
def current_user() -> str:
	return pwd.getpwuid(os.geteuid()).pw_name


#============================================
def install_hook(options: cip_settings.KernelOptions) -> None:
	owner = options.build_owner or current_user()
	exec_command = [
		sys.executable,
		os.path.abspath(__file__),
		"--settings",
		options.updater_config_path,
	]
	autoupdate.install_updater(options, owner, exec_command, log_fn=log_step)


#============================================
def main() -> None:
	args = parse_args()
	try:
		settings, settings_path = cip_settings.load_settings(args.settings)
		options = cip_settings.resolve_options(settings)
	except RuntimeError as error:
		log_step(f"Settings error: {error}", style="bold red")
		sys.exit(1)

	if args.install_hook:
		try:
			install_hook(options)
		except build_gateway.PreflightError as error:
			log_step(str(error), style="bold red")
			sys.exit(1)
		return

	kernel = autoupdate.read_running_kernel(args.release or platform.release())
	cache = build_cache.BuildCache(options.build_cache_dir, log_fn=log_step)
	decision = autoupdate.decide_update(
		kernel,
		lambda branch: build_gateway.remote_head_sha(options.clone_url, branch),
		cache,
		options.updater_state_dir,
		int(time.time()),
	)
	if not decision.run_build:
		log_step(f"Skipping: {decision.reason}", style="yellow")
		return
	log_step(f"Update needed: {decision.reason}")
	if args.dry_run:
		return

	# the builder refuses root, so a root hook hands the build to the owner
	owner = ""
	if os.geteuid() == 0:
		owner = options.build_owner
		if not owner or owner == "root":
			log_step("Running as root without updater.build_owner; cannot build.", style="bold red")
			sys.exit(1)

	default_profile = build_gateway.load_hardware_profile(options.profiles_dir, "default")
	env_vars = autoupdate.builder_environment(options, default_profile)
	command = autoupdate.builder_command(
		sys.executable,
		BUILDER_PATH,
		settings_path,
		decision.branch,
		owner=owner,
		env_vars=env_vars,
	)
	env = dict(os.environ)
	if not owner:
		env.update(env_vars)
	result = subprocess.run(command, env=env, check=False)
	autoupdate.write_stamp(
		autoupdate.stamp_path(options.updater_state_dir, decision.branch),
		decision.remote_sha,
	)
	if result.returncode != 0:
		log_step(f"Build for {decision.branch} failed (exit {result.returncode}).", style="bold red")
		sys.exit(result.returncode)
	log_step(f"Updated {decision.branch} to {decision.remote_sha[:12]}", style="green")


if __name__ == "__main__":
	main()
