#!/usr/bin/env python3
"""Pick a CIP kernel branch by support status, then build it incrementally.

Shows every CIP branch with its commit activity and SLTS end-of-life
countdown, lets the operator pick an ACTIVE branch (or takes --branch),
and drives the external build pipeline with a cached working tree.
"""

import argparse
import dataclasses
import json
import os
import shutil
import subprocess
import sys
import time
from datetime import datetime

try:
	import rich.console
	import rich.prompt
	import rich.table
except ModuleNotFoundError as error:
	raise RuntimeError(
		"Missing dependency: rich. Install with: pip install -e ."
	) from error

from cipkernel import branch_catalog
from cipkernel import branch_ranking
from cipkernel import build_cache
from cipkernel import build_gateway
from cipkernel import cip_settings
from cipkernel import eol_schedule
from cipkernel import gitiles_client


CONSOLE = rich.console.Console()
# progress goes to stderr so --json output on stdout stays parseable
LOG_CONSOLE = rich.console.Console(stderr=True)
STATUS_STYLES = {
	branch_ranking.BranchStatus.ACTIVE: "green",
	branch_ranking.BranchStatus.STALE: "red",
	branch_ranking.BranchStatus.UNKNOWN: "yellow",
}


#============================================
def log_step(message: str) -> None:
	"""
	Print one timestamped progress line.
	"""
	now_text = datetime.now().strftime("%H:%M:%S")
	line = f"[cip_kernel {now_text}] {message}"
	lower = message.lower()
	style = "cyan"
	if ("failed" in lower) or ("error" in lower) or ("not found" in lower):
		style = "bold red"
	elif ("unknown" in lower) or ("unavailable" in lower) or ("skipping" in lower) or ("stale" in lower):
		style = "yellow"
	elif ("recorded" in lower) or ("done" in lower) or ("selected" in lower):
		style = "green"
	LOG_CONSOLE.print(line, style=style, highlight=False)


#============================================
def parse_args() -> argparse.Namespace:
	"""
	Parse command-line arguments.
	"""
	parser = argparse.ArgumentParser(description=__doc__)
	parser.add_argument(
		"--branch",
		default="",
		help="Build this branch without prompting (ACTIVE first, STALE accepted).",
	)
	parser.add_argument(
		"--settings",
		default="settings.yaml",
		help="YAML settings path for defaults.",
	)
	parser.add_argument(
		"--threshold-days",
		type=int,
		default=0,
		help="Days since last commit that still count as ACTIVE (default: 120).",
	)
	parser.add_argument(
		"--include-rebase",
		action="store_true",
		help="Include -rebase branches in the catalog.",
	)
	parser.add_argument(
		"--json",
		action="store_true",
		help="Print the status rows as JSON on stdout instead of a table; no prompt.",
	)
	parser.add_argument(
		"--list-only",
		action="store_true",
		help="Show the status table and exit without building.",
	)
	profile_group = parser.add_mutually_exclusive_group()
	profile_group.add_argument(
		"--save-profile",
		metavar="NAME",
		default="",
		help="Save current lsmod output as a hardware profile and exit.",
	)
	profile_group.add_argument(
		"--load-profile",
		metavar="NAME",
		default="",
		help="Use a saved hardware profile for localmodconfig.",
	)
	profile_group.add_argument(
		"--merge-profiles",
		action="store_true",
		help="Merge all saved hardware profiles and use the union.",
	)
	return parser.parse_args()


#============================================
def resolve_run_options(args: argparse.Namespace) -> cip_settings.KernelOptions:
	"""
	Merge settings, environment and flags; flags win.
	"""
	settings, settings_path = cip_settings.load_settings(args.settings)
	log_step(f"Using settings file: {settings_path}")
	options = cip_settings.resolve_options(settings)
	overrides = {}
	if args.threshold_days > 0:
		overrides["threshold_days"] = args.threshold_days
	if args.include_rebase:
		overrides["include_rebase"] = True
	if overrides:
		options = dataclasses.replace(options, **overrides)
	return options


#============================================
def apply_profile_args(args: argparse.Namespace, options: cip_settings.KernelOptions) -> cip_settings.KernelOptions:
	"""
	Resolve --load-profile / --merge-profiles into the LSMOD profile path.
	"""
	profile = ""
	if args.load_profile:
		profile = build_gateway.load_hardware_profile(options.profiles_dir, args.load_profile) or ""
		if profile:
			log_step(f"Loading hardware profile from: {profile}")
		else:
			log_step(f"No profile named {args.load_profile}; skipping, using current modules.")
	elif args.merge_profiles:
		profile = build_gateway.merge_hardware_profiles(options.profiles_dir) or ""
		if profile:
			log_step(f"Merged profiles into: {profile}")
		else:
			log_step(f"No saved profiles under {options.profiles_dir}; skipping merge.")
	if not profile:
		return options
	return dataclasses.replace(options, lsmod_profile=profile)


#============================================
def render_status_table(rows: list[branch_ranking.RankedRow]) -> None:
	"""
	Render the ranked catalog with status colors.
	"""
	table = rich.table.Table(title="CIP Kernel Branches")
	for column in ("Branch", "Status", "Last Commit", "First Release", "EOL", "Time-to-EOL"):
		table.add_column(column, style="bold cyan" if column == "Branch" else None)
	for row in rows:
		record = row.as_dict()
		style = STATUS_STYLES[row.status]
		table.add_row(
			record["branch"],
			f"[{style}]{record['status']}[/{style}]",
			record["last_commit"],
			record["first_release"],
			record["eol"],
			record["time_to_eol"],
		)
	CONSOLE.print(table)


#============================================
def prompt_for_branch(active: list[str]) -> str:
	"""
	Let the operator pick one ACTIVE branch; "" means nothing selected.
	"""
	if shutil.which("fzf") is not None:
		result = subprocess.run(
			["fzf", "--prompt=SLTS> ", "--height=10", "--reverse"],
			input="\n".join(active) + "\n",
			capture_output=True,
			text=True,
			check=False,
		)
		return result.stdout.strip()
	for index, branch in enumerate(active, start=1):
		CONSOLE.print(f"  {index}) {branch}")
	choices = [str(index) for index in range(0, len(active) + 1)]
	picked = rich.prompt.IntPrompt.ask(
		"Select branch (0 to cancel)",
		choices=choices,
		show_choices=False,
		default=0,
		console=CONSOLE,
	)
	if picked == 0:
		return ""
	return active[picked - 1]


#============================================
def preflight(options: cip_settings.KernelOptions) -> str:
	"""
	Fatal host checks, ccache setup and boot hook; returns compiler prefix.
	"""
	tools = build_gateway.required_tools(options.use_ccache, options.pipeline_command)
	missing = build_gateway.check_required_tools(tools)
	if missing:
		raise build_gateway.PreflightError(
			f"Missing required tools: {' '.join(missing)}. Install them, then rerun."
		)
	build_gateway.ensure_not_root()
	for path in (options.ccache_dir, options.build_cache_dir, options.config_cache_dir, options.profiles_dir):
		os.makedirs(path, exist_ok=True)
	cc_prefix = ""
	if options.use_ccache:
		cc_prefix = build_gateway.setup_ccache(options.ccache_dir, options.build_cache_dir, log_fn=log_step)
	build_gateway.ensure_boot_hook(options.boot_hook_path, log_fn=log_step)
	return cc_prefix


#============================================
def log_plan(plan: build_cache.BuildPlan) -> None:
	log_step(f"Build cache directory: {plan.entry_dir}")
	log_step(f"Cache state: {plan.state.value}; source: {plan.source_action.value}")
	log_step(f"Build mode: {'incremental' if plan.incremental else 'clean'}")
	log_step(f"Saved config: {plan.saved_config or 'none (fresh configuration)'}")
	log_step(f"ccache: {'enabled' if plan.use_ccache else 'disabled'}")
	log_step(f"localmodconfig: {'enabled' if plan.use_localmodconfig else 'disabled'}")
	log_step(f"Package base: {plan.package_base}")


#============================================
def build_branch(options: cip_settings.KernelOptions, branch: str) -> None:
	"""
	Plan and run one build; the cache record changes only on success.
	"""
	cc_prefix = preflight(options)
	cache = build_cache.BuildCache(options.build_cache_dir, log_fn=log_step)
	with cache.lock(branch):
		remote_sha = build_gateway.remote_head_sha(options.clone_url, branch)
		if not remote_sha:
			log_step(f"Remote head for {branch} unavailable; source will be refreshed.")
		plan = cache.plan(branch, remote_sha, options)
		cache.ensure_entry(branch)
		log_plan(plan)
		build_gateway.prepare_source_tree(plan, options.clone_url, log_fn=log_step)
		result = build_gateway.run_pipeline(
			plan,
			options.pipeline_command,
			options.ccache_dir,
			cc_prefix,
			log_fn=log_step,
		)
		cache.commit_build(branch, result.kernel_version, result.commit, result.config_path)
	log_step(f"Done: {plan.package_base} {result.kernel_version} built from {branch}")


#============================================
def main() -> None:
	args = parse_args()
	try:
		options = resolve_run_options(args)
	except RuntimeError as error:
		log_step(f"Settings error: {error}")
		sys.exit(1)

	if args.save_profile:
		path, module_count = build_gateway.save_hardware_profile(options.profiles_dir, args.save_profile)
		log_step(f"Profile saved to {path} with {module_count} modules")
		return
	options = apply_profile_args(args, options)

	client = gitiles_client.GitilesClient(
		options.base_url,
		timeout_seconds=options.fetch_timeout_seconds,
		max_workers=options.fetch_workers,
		log_fn=log_step,
	)
	try:
		branches = branch_catalog.resolve_catalog(client, options.include_rebase)
	except branch_catalog.CatalogError as error:
		log_step(str(error))
		sys.exit(1)
	log_step(f"Catalog: {len(branches)} branch(es)")

	schedule = eol_schedule.fetch_eol_schedule(client, options.eol_url, log_fn=log_step)
	epochs = client.fetch_head_epochs(branches)
	now_epoch = int(time.time())
	rows = branch_ranking.build_ranked_rows(
		branches,
		epochs,
		schedule,
		now_epoch,
		options.threshold_days,
	)
	usage = client.api_usage_snapshot()
	log_step(f"Requests: {usage['api_call_count']} ({usage['failure_count']} failed)")

	if args.json:
		print(json.dumps([row.as_dict() for row in rows], indent=2))
	else:
		render_status_table(rows)

	if args.branch:
		try:
			choice = branch_ranking.resolve_branch_override(args.branch, rows)
		except branch_ranking.BranchNotFoundError as error:
			log_step(str(error))
			sys.exit(1)
		log_step(f"Selected by argument: {choice}")
	elif args.list_only or args.json:
		return
	else:
		active = branch_ranking.active_branches(rows)
		if not active:
			log_step(f"No ACTIVE branches under the current threshold ({options.threshold_days} days).")
			return
		choice = prompt_for_branch(active)
		if not choice:
			return
		log_step(f"Selected: {choice}")

	try:
		build_branch(options, choice)
	except (RuntimeError, OSError) as error:
		log_step(f"Build failed: {error}")
		sys.exit(1)


if __name__ == "__main__":
	main()
