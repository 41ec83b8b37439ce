"""Branch status classification and EOL-ordered ranking.

Rows are ordered by the end instant of their EOL month, latest first, with
branch name as tie-break. Rows without a usable EOL month carry a sort
epoch of -1 and therefore always land after every row with a known EOL.
"""

# Standard Library
import enum
from dataclasses import dataclass

# local repo modules
from cipkernel import branch_catalog
from cipkernel import calendar_math


UNKNOWN_TEXT = "UNKNOWN"
MISSING_TEXT = "-"


#============================================
class BranchStatus(enum.Enum):
	ACTIVE = "ACTIVE"
	STALE = "STALE"
	UNKNOWN = "UNKNOWN"


#============================================
class BranchNotFoundError(RuntimeError):
	"""
	Raised when a requested branch is not in the resolved catalog.
	"""


#============================================
@dataclass(frozen=True)
class RankedRow:
	branch: str
	status: BranchStatus
	last_commit_epoch: int
	age_description: str
	eol_key: str
	first_release: str | None
	eol_month: str | None
	time_to_eol: calendar_math.CalendarSpan | None
	sort_epoch: int

	#============================================
	def as_dict(self) -> dict:
		"""
		Structured record with explicit UNKNOWN markers for presentation.
		"""
		time_text = MISSING_TEXT
		if self.time_to_eol is not None:
			time_text = calendar_math.format_span(self.time_to_eol)
		return {
			"branch": self.branch,
			"status": self.status.value,
			"last_commit": self.age_description,
			"last_commit_epoch": self.last_commit_epoch,
			"first_release": self.first_release or UNKNOWN_TEXT,
			"eol": self.eol_month or UNKNOWN_TEXT,
			"time_to_eol": time_text,
			"sort_epoch": self.sort_epoch,
		}


#============================================
def classify_branch(last_commit_epoch: int, now_epoch: int, threshold_days: int = 120) -> BranchStatus:
	"""
	ACTIVE inside the threshold window, STALE outside it, UNKNOWN without a timestamp.
	"""
	if last_commit_epoch <= 0:
		return BranchStatus.UNKNOWN
	if now_epoch - last_commit_epoch < threshold_days * calendar_math.SECONDS_PER_DAY:
		return BranchStatus.ACTIVE
	return BranchStatus.STALE


#============================================
def row_sort_key(row: RankedRow) -> tuple:
	return (-row.sort_epoch, row.branch)


#============================================
def build_ranked_row(
	branch: str,
	last_commit_epoch: int,
	schedule,
	now_epoch: int,
	threshold_days: int,
) -> RankedRow:
	"""
	Join one branch with its schedule entry.
	"""
	status = classify_branch(last_commit_epoch, now_epoch, threshold_days)
	age_description = MISSING_TEXT
	if status is not BranchStatus.UNKNOWN:
		age_description = calendar_math.format_days_ago(
			calendar_math.age_days(now_epoch, last_commit_epoch)
		)
	eol_key = branch_catalog.branch_to_eol_key(branch)
	entry = schedule.lookup(eol_key)
	first_release = None
	if entry.first_release is not None:
		first_release = entry.first_release.isoformat()
	sort_epoch = -1
	time_to_eol = None
	if entry.eol_month is not None:
		eol_epoch = calendar_math.month_end_epoch(entry.eol_month)
		if eol_epoch > 0:
			sort_epoch = eol_epoch
			time_to_eol = calendar_math.calendar_diff(now_epoch, eol_epoch)
	return RankedRow(
		branch=branch,
		status=status,
		last_commit_epoch=last_commit_epoch,
		age_description=age_description,
		eol_key=eol_key,
		first_release=first_release,
		eol_month=entry.eol_month,
		time_to_eol=time_to_eol,
		sort_epoch=sort_epoch,
	)


#============================================
def build_ranked_rows(
	branches: list[str],
	epochs: dict[str, int],
	schedule,
	now_epoch: int,
	threshold_days: int = 120,
) -> list[RankedRow]:
	"""
	Build and sort rows for every branch; missing epochs count as unknown.
	"""
	rows = [
		build_ranked_row(branch, epochs.get(branch, 0), schedule, now_epoch, threshold_days)
		for branch in branches
	]
	rows.sort(key=row_sort_key)
	return rows


#============================================
def active_branches(rows: list[RankedRow]) -> list[str]:
	"""
	ACTIVE branch names in ranking order, longest remaining support first.
	"""
	return [row.branch for row in rows if row.status is BranchStatus.ACTIVE]


#============================================
def resolve_branch_override(requested: str, rows: list[RankedRow]) -> str:
	"""
	Validate a caller-supplied branch against the catalog.

	ACTIVE rows are matched first; any catalog row (STALE or UNKNOWN
	included) is accepted next so unattended updates are not blocked
	by staleness.
	"""
	wanted = (requested or "").strip()
	for branch in active_branches(rows):
		if branch == wanted:
			return branch
	for row in rows:
		if row.branch == wanted:
			return row.branch
	raise BranchNotFoundError(f"Branch {wanted} not found")
