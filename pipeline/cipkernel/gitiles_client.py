import base64
import binascii
import threading
from concurrent.futures import ThreadPoolExecutor

import requests


#============================================
class RemoteFetchError(RuntimeError):
	"""
	Raised when a remote document cannot be fetched.
	"""


#============================================
class GitilesClient:
	"""
	Thin requests wrapper for the gitiles web front-end of the CIP tree.
	"""

	def __init__(
		self,
		base_url: str,
		timeout_seconds: int = 20,
		max_workers: int = 8,
		log_fn=None,
		session=None,
	):
		self.base_url = base_url.rstrip("/")
		self.timeout_seconds = timeout_seconds
		self.max_workers = max(1, int(max_workers))
		self.log_fn = log_fn
		self.session = session if session is not None else requests.Session()
		self._counter_lock = threading.Lock()
		self._api_call_count = 0
		self._api_calls_by_context: dict[str, int] = {}
		self._failure_count = 0

	#============================================
	def log(self, message: str) -> None:
		"""
		Emit one log line when logger is configured.
		"""
		if self.log_fn is not None:
			self.log_fn(message)

	#============================================
	def record_api_call(self, context: str, failed: bool = False) -> None:
		"""
		Track one outbound request.
		"""
		with self._counter_lock:
			self._api_call_count += 1
			if context not in self._api_calls_by_context:
				self._api_calls_by_context[context] = 0
			self._api_calls_by_context[context] += 1
			if failed:
				self._failure_count += 1

	#============================================
	def api_usage_snapshot(self) -> dict:
		"""
		Return request counters for reporting.
		"""
		with self._counter_lock:
			return {
				"api_call_count": self._api_call_count,
				"api_calls_by_context": dict(self._api_calls_by_context),
				"failure_count": self._failure_count,
			}

	#============================================
	def fetch_text(self, url: str, context: str) -> str:
		"""
		GET one URL and return its body text, raising RemoteFetchError on failure.
		"""
		try:
			response = self.session.get(url, timeout=self.timeout_seconds)
			response.raise_for_status()
		except requests.RequestException as error:
			self.record_api_call(context, failed=True)
			raise RemoteFetchError(f"Fetch failed for {context}: {error}") from error
		self.record_api_call(context)
		return response.text

	#============================================
	def fetch_refs_listing(self) -> str:
		"""
		Fetch the +refs page listing every branch and tag.
		"""
		return self.fetch_text(f"{self.base_url}/+refs", "GET +refs")

	#============================================
	def fetch_branch_head_epoch(self, branch: str) -> int:
		"""
		Return committer epoch of a branch head, or 0 when unavailable.
		"""
		url = f"{self.base_url}/+/refs/heads/{branch}?format=TEXT"
		try:
			payload = self.fetch_text(url, "GET branch head")
		except RemoteFetchError as error:
			self.log(f"Branch head unavailable for {branch}: {error}")
			return 0
		epoch = parse_committer_epoch(payload)
		if epoch == 0:
			self.log(f"Branch head for {branch} has no readable committer line.")
		return epoch

	#============================================
	def fetch_head_epochs(self, branches: list[str]) -> dict[str, int]:
		"""
		Fetch head epochs for all branches with bounded parallelism.

		Returns only after every lookup finished; failed lookups map to 0.
		"""
		if not branches:
			return {}
		workers = min(self.max_workers, len(branches))
		with ThreadPoolExecutor(max_workers=workers) as executor:
			epochs = list(executor.map(self.fetch_branch_head_epoch, branches))
		return dict(zip(branches, epochs))


#============================================
def parse_committer_epoch(payload: str) -> int:
	"""
	Decode a base64 commit object and read its committer timestamp.

	The committer line reads "committer Name <mail> 1700000000 +0000",
	so the epoch is the second-to-last token.
	"""
	try:
		raw = base64.b64decode(payload.strip(), validate=False)
	except (binascii.Error, ValueError):
		return 0
	text = raw.decode("utf-8", errors="replace")
	for line in text.splitlines():
		if not line.startswith("committer "):
			continue
		tokens = line.split()
		if len(tokens) < 3:
			return 0
		candidate = tokens[-2]
		if candidate.isdigit():
			return int(candidate)
		return 0
	return 0
