"""CIP branch naming rules and remote catalog discovery.

Branches follow linux-<MAJOR>.<MINOR>.y-cip with an optional -rt or
-rebase qualifier. This module extracts them from the gitiles refs
listing, orders them naturally, and derives the keys used elsewhere
(support-schedule key, artifact flavor, cache directory name).
"""

# Standard Library
import re

# local repo modules
from cipkernel import gitiles_client


BRANCH_RE = re.compile(r"linux-([0-9]+)\.([0-9]+)\.y-cip(-rt|-rebase)?")
BRANCH_PARTS_RE = re.compile(r"linux-([0-9]+\.[0-9]+)\.y-cip(.*)")
KERNEL_RELEASE_RE = re.compile(r"^([0-9]+)\.([0-9]+)\.")
SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]")
PACKAGE_BASE_PREFIX = "linux-cip"


#============================================
class CatalogError(RuntimeError):
	"""
	Raised when no candidate branch set can be resolved.
	"""


#============================================
def branch_sort_key(branch: str) -> tuple:
	"""
	Natural version ordering: 4.19 before 6.1 before 6.12, plain before suffixed.
	"""
	match = BRANCH_RE.fullmatch(branch)
	if not match:
		return (1, 0, 0, branch)
	major, minor, suffix = match.groups()
	return (0, int(major), int(minor), suffix or "")


#============================================
def extract_branch_names(text: str) -> list[str]:
	"""
	Find every CIP branch name in a refs listing, deduplicated and sorted.
	"""
	names = {match.group(0) for match in BRANCH_RE.finditer(text or "")}
	return sorted(names, key=branch_sort_key)


#============================================
def filter_rebase(branches: list[str], include_rebase: bool) -> list[str]:
	"""
	Drop -rebase branches unless explicitly included.
	"""
	if include_rebase:
		return list(branches)
	return [branch for branch in branches if not branch.endswith("-rebase")]


#============================================
def resolve_catalog(client, include_rebase: bool = False) -> list[str]:
	"""
	List candidate branches from the remote, raising CatalogError when none.
	"""
	try:
		listing = client.fetch_refs_listing()
	except gitiles_client.RemoteFetchError as error:
		raise CatalogError(f"Cannot list remote branches: {error}") from error
	all_branches = extract_branch_names(listing)
	if not all_branches:
		raise CatalogError("No CIP branches found on +refs")
	return filter_rebase(all_branches, include_rebase)


#============================================
def branch_to_eol_key(branch: str) -> str:
	"""
	Map a branch to its support-schedule key (6.1 or 6.1-rt).
	"""
	match = BRANCH_PARTS_RE.search(branch or "")
	if not match:
		return ""
	version, rest = match.groups()
	if "-rt" in rest:
		return f"{version}-rt"
	return version


#============================================
def branch_flavor(branch: str) -> str:
	"""
	Return the artifact flavor suffix: -rt, -rebase or empty.
	"""
	if "-rt" in branch:
		return "-rt"
	if "-rebase" in branch:
		return "-rebase"
	return ""


#============================================
def package_base(branch: str) -> str:
	"""
	Return the package family name for a branch, e.g. linux-cip-rt.
	"""
	return f"{PACKAGE_BASE_PREFIX}{branch_flavor(branch)}"


#============================================
def branch_safe_name(branch: str) -> str:
	"""
	Filesystem-safe directory name for one branch.
	"""
	return SAFE_NAME_RE.sub("-", branch)


#============================================
def branch_for_kernel_release(kernel_release: str, pkgbase: str) -> str:
	"""
	Derive the source branch from a running kernel release and its package base.

	Returns an empty string when the package base is not a CIP family or
	the release does not start with MAJOR.MINOR.
	"""
	if pkgbase == PACKAGE_BASE_PREFIX:
		suffix = ""
	elif pkgbase in (f"{PACKAGE_BASE_PREFIX}-rt", f"{PACKAGE_BASE_PREFIX}-rebase"):
		suffix = pkgbase[len(PACKAGE_BASE_PREFIX):]
	else:
		return ""
	match = KERNEL_RELEASE_RE.match(kernel_release or "")
	if not match:
		return ""
	return f"linux-{match.group(1)}.{match.group(2)}.y-cip{suffix}"
