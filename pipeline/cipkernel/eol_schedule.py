"""Support-schedule lookup parsed from the CIP wiki table.

The wiki source holds a pipe-delimited table where each SLTS row carries
the version label, the first release date, and the projected EOL month:

	| SLTS v6.1 | Linux 6.1 | 2023-07-14 | 2033-08 | ... |

Only rows whose label matches the SLTS tier prefix are admitted, and each
date column is validated on its own so a malformed first-release date does
not hide a valid EOL month.
"""

# Standard Library
import re
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from types import MappingProxyType

# local repo modules
from cipkernel import gitiles_client


TIER_ROW_RE = re.compile(r"\|\s*SLTS v[0-9]+\.[0-9]+")
TIER_LABEL_RE = re.compile(r"^SLTS v([0-9]+\.[0-9]+(?:-rt)?)$")
FIRST_RELEASE_RE = re.compile(r"^[0-9]{4}-[0-9]{2}-[0-9]{2}$")
EOL_MONTH_RE = re.compile(r"^[0-9]{4}-(0[1-9]|1[0-2])$")
LABEL_COLUMN = 1
FIRST_RELEASE_COLUMN = 3
EOL_COLUMN = 4


#============================================
@dataclass(frozen=True)
class EolEntry:
	"""Support facts for one schedule key; either field may be unknown."""
	first_release: date | None
	eol_month: str | None


#============================================
@dataclass(frozen=True)
class EolSchedule:
	"""Immutable key -> support facts lookup."""
	first_release: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))
	eol_month: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))
	reachable: bool = True

	#============================================
	def lookup(self, key: str) -> EolEntry:
		"""
		Return the entry for a key; absent facts are None.
		"""
		return EolEntry(
			first_release=self.first_release.get(key),
			eol_month=self.eol_month.get(key),
		)

	#============================================
	def __len__(self) -> int:
		return len(set(self.first_release) | set(self.eol_month))


#============================================
def parse_first_release(text: str) -> date | None:
	"""
	Parse a YYYY-MM-DD field, returning None when malformed.
	"""
	if not FIRST_RELEASE_RE.match(text):
		return None
	try:
		return date.fromisoformat(text)
	except ValueError:
		return None


#============================================
def parse_eol_table(text: str) -> EolSchedule:
	"""
	Parse every SLTS row of the wiki table into an EolSchedule.
	"""
	first_release: dict[str, date] = {}
	eol_month: dict[str, str] = {}
	for line in (text or "").splitlines():
		if not TIER_ROW_RE.search(line):
			continue
		columns = [column.strip() for column in line.split("|")]
		if len(columns) <= LABEL_COLUMN:
			continue
		label_match = TIER_LABEL_RE.match(columns[LABEL_COLUMN])
		if not label_match:
			continue
		key = label_match.group(1)
		if len(columns) > FIRST_RELEASE_COLUMN:
			released = parse_first_release(columns[FIRST_RELEASE_COLUMN])
			if released is not None:
				first_release[key] = released
		if len(columns) > EOL_COLUMN and EOL_MONTH_RE.match(columns[EOL_COLUMN]):
			eol_month[key] = columns[EOL_COLUMN]
	return EolSchedule(
		first_release=MappingProxyType(first_release),
		eol_month=MappingProxyType(eol_month),
	)


#============================================
def fetch_eol_schedule(client, url: str, log_fn=None) -> EolSchedule:
	"""
	Fetch and parse the schedule, degrading to an empty lookup on failure.
	"""
	try:
		text = client.fetch_text(url, "GET EOL schedule")
	except gitiles_client.RemoteFetchError as error:
		if log_fn is not None:
			log_fn(f"EOL schedule unavailable, all EOL data UNKNOWN: {error}")
		return EolSchedule(reachable=False)
	schedule = parse_eol_table(text)
	if len(schedule) == 0 and log_fn is not None:
		log_fn("EOL schedule fetched but no SLTS rows parsed; EOL data UNKNOWN.")
	return schedule
