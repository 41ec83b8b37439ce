"""Persistent per-branch build cache and build-plan decisions.

Each branch owns one directory under the build cache root:

	<root>/<branch_safe_name>/
		build_state.json   last committed build (branch, version, commit, time)
		.config.saved      configuration snapshot reused by the next build
		.build_complete    marker: a full build finished at least once
		.lock              advisory lock held while a build runs
		linux-cip/         source working tree

The state record is plain JSON parsed field by field. Writes go through a
temp file in the same directory followed by os.replace, so an interrupted
run leaves the previous record intact.
"""

# Standard Library
import enum
import json
import os
import re
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone

# local repo modules
from cipkernel import branch_catalog


STATE_FILENAME = "build_state.json"
LEGACY_STATE_FILENAME = ".build_state"
SAVED_CONFIG_FILENAME = ".config.saved"
COMPLETE_MARKER_FILENAME = ".build_complete"
LOCK_FILENAME = ".lock"
SOURCE_DIRNAME = "linux-cip"
LOCK_STALE_SECONDS = 12 * 60 * 60
LEGACY_LINE_RE = re.compile(r'^([A-Z_]+)="(.*)"$')

DEBUG_SYMBOL_TWEAKS = (
	"-d", "DEBUG_INFO",
	"-d", "DEBUG_INFO_DWARF_TOOLCHAIN_DEFAULT",
	"-d", "DEBUG_INFO_DWARF4",
	"-d", "DEBUG_INFO_DWARF5",
	"-e", "CONFIG_DEBUG_INFO_NONE",
)
SIZE_TWEAKS = (
	"-d", "IKHEADERS",
	"-d", "IKHEADERS_PROC",
	"-e", "MODULE_COMPRESS_GZIP",
)


#============================================
class CacheState(enum.Enum):
	ABSENT = "absent"
	FRESH = "fresh"
	BUILT = "built"
	STALE_SOURCE = "stale_source"


#============================================
class SourceAction(enum.Enum):
	CLONE = "clone"
	UPDATE = "update"
	REUSE = "reuse"


#============================================
class BuildLockError(RuntimeError):
	"""
	Raised when another live build holds the branch lock.
	"""


#============================================
@dataclass(frozen=True)
class BuildRecord:
	branch: str
	kernel_version: str = ""
	commit: str = ""
	built_at: str = ""

	#============================================
	def to_dict(self) -> dict:
		return {
			"branch": self.branch,
			"kernel_version": self.kernel_version,
			"commit": self.commit,
			"built_at": self.built_at,
		}


#============================================
@dataclass(frozen=True)
class BuildPlan:
	"""Everything the external pipeline needs to build one branch."""
	branch: str
	state: CacheState
	source_action: SourceAction
	clean_build: bool
	entry_dir: str
	source_dir: str
	saved_config: str | None
	use_ccache: bool
	use_localmodconfig: bool
	lsmod_profile: str | None
	config_tweaks: tuple[str, ...]
	flavor: str
	package_base: str

	@property
	def incremental(self) -> bool:
		return not self.clean_build


#============================================
def utc_now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


#============================================
def atomic_write_bytes(path: str, data: bytes) -> None:
	"""
	Write bytes via temp file in the same directory, then rename over target.
	"""
	dir_name = os.path.dirname(os.path.abspath(path))
	fd, tmp_path = tempfile.mkstemp(dir=dir_name, prefix=".tmp-", suffix=".part")
	try:
		with os.fdopen(fd, "wb") as handle:
			handle.write(data)
			handle.flush()
			os.fsync(handle.fileno())
		os.replace(tmp_path, path)
	except BaseException:
		if os.path.exists(tmp_path):
			os.remove(tmp_path)
		raise


#============================================
def atomic_write_text(path: str, text: str) -> None:
	atomic_write_bytes(path, text.encode("utf-8"))


#============================================
def parse_record_payload(payload) -> BuildRecord | None:
	"""
	Validate a decoded JSON payload field by field.
	"""
	if not isinstance(payload, dict):
		return None
	branch = payload.get("branch")
	if not isinstance(branch, str) or not branch:
		return None
	values = {}
	for name in ("kernel_version", "commit", "built_at"):
		value = payload.get(name, "")
		if not isinstance(value, str):
			return None
		values[name] = value
	return BuildRecord(branch=branch, **values)


#============================================
def parse_legacy_state(text: str) -> BuildRecord | None:
	"""
	Read a KEY="value" state file as data. The file is never executed.
	"""
	fields = {}
	for line in text.splitlines():
		match = LEGACY_LINE_RE.match(line.strip())
		if match:
			fields[match.group(1)] = match.group(2)
	branch = fields.get("LAST_BRANCH", "")
	if not branch:
		return None
	return BuildRecord(
		branch=branch,
		kernel_version=fields.get("LAST_VERSION", ""),
		commit=fields.get("LAST_COMMIT", ""),
		built_at=fields.get("LAST_BUILD_DATE", ""),
	)


#============================================
def config_tweaks(debug_symbols: bool) -> tuple[str, ...]:
	"""
	scripts/config arguments applied after the configuration is resolved.
	"""
	if debug_symbols:
		return SIZE_TWEAKS
	return DEBUG_SYMBOL_TWEAKS + SIZE_TWEAKS


#============================================
def decide_state(record: BuildRecord | None, marker_present: bool, remote_commit: str) -> CacheState:
	"""
	Compute the cache state from the recorded build and the remote head.
	"""
	if record is None:
		return CacheState.ABSENT
	if not record.commit or not marker_present:
		return CacheState.FRESH
	if remote_commit and remote_commit != record.commit:
		return CacheState.STALE_SOURCE
	return CacheState.BUILT


#============================================
def decide_source_action(state: CacheState, source_present: bool, remote_commit: str) -> SourceAction:
	"""
	Choose how the working tree is brought up to date.

	A missing tree always means a fresh clone. A tree with an unchanged
	recorded commit is reused as is; anything else is fetched and
	fast-forwarded.
	"""
	if not source_present:
		return SourceAction.CLONE
	if state is CacheState.BUILT and remote_commit:
		return SourceAction.REUSE
	return SourceAction.UPDATE


#============================================
class BranchLock:
	"""
	Per-branch advisory lock file holding the owner PID and start time.
	"""

	def __init__(self, entry_dir: str, stale_seconds: int = LOCK_STALE_SECONDS, log_fn=None):
		self.path = os.path.join(entry_dir, LOCK_FILENAME)
		self.stale_seconds = stale_seconds
		self.log_fn = log_fn
		self.held = False

	#============================================
	def log(self, message: str) -> None:
		if self.log_fn is not None:
			self.log_fn(message)

	#============================================
	def _read_owner(self) -> dict:
		try:
			with open(self.path, "r", encoding="utf-8") as handle:
				payload = json.load(handle)
		except (OSError, ValueError):
			return {}
		if not isinstance(payload, dict):
			return {}
		return payload

	#============================================
	def is_stale(self, owner: dict) -> bool:
		"""
		A lock is stale when its PID is gone or it is older than the window.
		"""
		pid = owner.get("pid")
		started = owner.get("started_epoch")
		if not isinstance(pid, int) or not isinstance(started, (int, float)):
			return True
		if time.time() - started > self.stale_seconds:
			return True
		try:
			os.kill(pid, 0)
		except ProcessLookupError:
			return True
		except PermissionError:
			return False
		return False

	#============================================
	def _try_create(self) -> bool:
		"""
		Publish a fully written owner file with os.link; False when taken.
		"""
		dir_name = os.path.dirname(self.path)
		fd, tmp_path = tempfile.mkstemp(dir=dir_name, prefix=".lock-", suffix=".part")
		try:
			with os.fdopen(fd, "w", encoding="utf-8") as handle:
				owner = {"pid": os.getpid(), "started_epoch": int(time.time())}
				handle.write(json.dumps(owner, sort_keys=True))
			try:
				os.link(tmp_path, self.path)
			except FileExistsError:
				return False
			return True
		finally:
			os.remove(tmp_path)

	#============================================
	def _break_stale(self, owner: dict) -> bool:
		"""
		Move the stale lock aside and delete it only if it is still the one judged stale.

		Returns False when the lock changed hands in the meantime.
		"""
		aside_path = f"{self.path}.stale-{os.getpid()}"
		try:
			os.rename(self.path, aside_path)
		except FileNotFoundError:
			return True
		try:
			with open(aside_path, "r", encoding="utf-8") as handle:
				moved_owner = json.load(handle)
		except (OSError, ValueError):
			moved_owner = {}
		if moved_owner != owner:
			# a new holder replaced the stale lock; put it back
			try:
				os.link(aside_path, self.path)
			except FileExistsError:
				pass
			os.remove(aside_path)
			return False
		os.remove(aside_path)
		return True

	#============================================
	def acquire(self) -> None:
		os.makedirs(os.path.dirname(self.path), exist_ok=True)
		if self._try_create():
			self.held = True
			return
		owner = self._read_owner()
		if not self.is_stale(owner):
			raise BuildLockError(
				f"Another build holds {self.path} (pid {owner.get('pid')}); retry later."
			)
		self.log(f"Removing stale build lock {self.path} (pid {owner.get('pid')}).")
		if not self._break_stale(owner):
			raise BuildLockError(f"Build lock {self.path} changed hands; retry later.")
		if not self._try_create():
			raise BuildLockError(f"Lost race for build lock {self.path}; retry later.")
		self.held = True

	#============================================
	def release(self) -> None:
		if not self.held:
			return
		self.held = False
		try:
			os.remove(self.path)
		except FileNotFoundError:
			return

	def __enter__(self):
		self.acquire()
		return self

	def __exit__(self, exc_type, exc_value, traceback):
		self.release()
		return False


#============================================
class BuildCache:
	"""
	Filesystem-backed build cache keyed by branch.
	"""

	def __init__(self, root_dir: str, log_fn=None):
		self.root_dir = os.path.abspath(root_dir)
		self.log_fn = log_fn

	#============================================
	def log(self, message: str) -> None:
		if self.log_fn is not None:
			self.log_fn(message)

	#============================================
	def entry_dir(self, branch: str) -> str:
		return os.path.join(self.root_dir, branch_catalog.branch_safe_name(branch))

	#============================================
	def source_dir(self, branch: str) -> str:
		return os.path.join(self.entry_dir(branch), SOURCE_DIRNAME)

	#============================================
	def state_path(self, branch: str) -> str:
		return os.path.join(self.entry_dir(branch), STATE_FILENAME)

	#============================================
	def saved_config_path(self, branch: str) -> str:
		return os.path.join(self.entry_dir(branch), SAVED_CONFIG_FILENAME)

	#============================================
	def marker_path(self, branch: str) -> str:
		return os.path.join(self.entry_dir(branch), COMPLETE_MARKER_FILENAME)

	#============================================
	def lock(self, branch: str) -> BranchLock:
		return BranchLock(self.entry_dir(branch), log_fn=self.log_fn)

	#============================================
	def source_present(self, branch: str) -> bool:
		"""
		True when the working tree looks intact (git metadata plus top Makefile).
		"""
		source = self.source_dir(branch)
		return os.path.isdir(os.path.join(source, ".git")) and os.path.isfile(
			os.path.join(source, "Makefile")
		)

	#============================================
	def load_record(self, branch: str) -> BuildRecord | None:
		"""
		Load the branch record; unreadable or foreign content counts as absent.
		"""
		path = self.state_path(branch)
		if os.path.isfile(path):
			try:
				with open(path, "r", encoding="utf-8") as handle:
					payload = json.load(handle)
			except (OSError, ValueError) as error:
				self.log(f"Ignoring unreadable build state {path}: {error}")
				return None
			record = parse_record_payload(payload)
			if record is None:
				self.log(f"Ignoring malformed build state {path}")
				return None
			if record.branch != branch:
				self.log(f"Ignoring build state for {record.branch} found under {path}")
				return None
			return record
		legacy_path = os.path.join(self.entry_dir(branch), LEGACY_STATE_FILENAME)
		if os.path.isfile(legacy_path):
			with open(legacy_path, "r", encoding="utf-8", errors="replace") as handle:
				record = parse_legacy_state(handle.read())
			if record is not None and record.branch == branch:
				self.log(f"Read legacy build state {legacy_path}")
				return record
		return None

	#============================================
	def save_record(self, record: BuildRecord) -> str:
		path = self.state_path(record.branch)
		text = json.dumps(record.to_dict(), ensure_ascii=True, indent=2, sort_keys=True) + "\n"
		atomic_write_text(path, text)
		return path

	#============================================
	def state(self, branch: str, remote_commit: str = "") -> CacheState:
		record = self.load_record(branch)
		marker_present = os.path.isfile(self.marker_path(branch))
		return decide_state(record, marker_present, remote_commit)

	#============================================
	def ensure_entry(self, branch: str) -> BuildRecord:
		"""
		Create the entry directory and an empty record on first encounter.
		"""
		os.makedirs(self.entry_dir(branch), exist_ok=True)
		record = self.load_record(branch)
		if record is not None:
			return record
		record = BuildRecord(branch=branch)
		self.save_record(record)
		self.log(f"Created build cache entry {self.entry_dir(branch)}")
		return record

	#============================================
	def plan(self, branch: str, remote_commit: str, options) -> BuildPlan:
		"""
		Decide clone/update/reuse, clean vs incremental, and config inputs.
		"""
		state = self.state(branch, remote_commit)
		source_present = self.source_present(branch)
		source_action = decide_source_action(state, source_present, remote_commit)
		marker_present = os.path.isfile(self.marker_path(branch))
		clean_build = (
			(not options.incremental)
			or (not marker_present)
			or source_action is SourceAction.CLONE
		)
		saved_config = self.saved_config_path(branch)
		if not os.path.isfile(saved_config):
			saved_config = None
		lsmod_profile = options.lsmod_profile or None
		return BuildPlan(
			branch=branch,
			state=state,
			source_action=source_action,
			clean_build=clean_build,
			entry_dir=self.entry_dir(branch),
			source_dir=self.source_dir(branch),
			saved_config=saved_config,
			use_ccache=options.use_ccache,
			use_localmodconfig=options.use_localmodconfig and saved_config is None,
			lsmod_profile=lsmod_profile,
			config_tweaks=config_tweaks(options.debug_symbols),
			flavor=branch_catalog.branch_flavor(branch),
			package_base=branch_catalog.package_base(branch),
		)

	#============================================
	def commit_build(
		self,
		branch: str,
		kernel_version: str,
		commit: str,
		config_path: str | None = None,
	) -> BuildRecord:
		"""
		Promote a finished build: snapshot config, set marker, write record last.
		"""
		if not kernel_version or not commit:
			raise RuntimeError(f"Refusing to record build for {branch} without version and commit")
		os.makedirs(self.entry_dir(branch), exist_ok=True)
		if config_path and os.path.isfile(config_path):
			with open(config_path, "rb") as handle:
				atomic_write_bytes(self.saved_config_path(branch), handle.read())
		atomic_write_text(self.marker_path(branch), utc_now_iso() + "\n")
		record = BuildRecord(
			branch=branch,
			kernel_version=kernel_version,
			commit=commit,
			built_at=utc_now_iso(),
		)
		self.save_record(record)
		self.log(f"Recorded build {kernel_version} ({commit[:12]}) for {branch}")
		return record
