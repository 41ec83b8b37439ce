"""Calendar arithmetic for end-of-life countdowns.

All conversions happen in UTC so month boundaries never shift with
daylight-saving rules. Durations are counted in whole calendar months
first and leftover days second, so "1 mos 0 days" always means the same
day-of-month one month later regardless of month length.
"""

# Standard Library
import calendar
import re
from datetime import date
from datetime import datetime
from datetime import timezone
from typing import NamedTuple


YEAR_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")
SECONDS_PER_DAY = 86400


#============================================
class CalendarSpan(NamedTuple):
	"""Elapsed calendar time as whole years, months and days."""
	years: int
	months: int
	days: int


ZERO_SPAN = CalendarSpan(0, 0, 0)


#============================================
def month_end_epoch(year_month: str) -> int:
	"""Return the epoch of the last second of a YYYY-MM month in UTC.

	Args:
		year_month: Month text such as "2033-08".

	Returns:
		Epoch seconds for YYYY-MM-<last day> 23:59:59 UTC, or 0 when the
		text is not a valid year-month.
	"""
	match = YEAR_MONTH_RE.match((year_month or "").strip())
	if not match:
		return 0
	year = int(match.group(1))
	month = int(match.group(2))
	if month < 1 or month > 12 or year < 1970:
		return 0
	last_day = calendar.monthrange(year, month)[1]
	end = datetime(year, month, last_day, 23, 59, 59, tzinfo=timezone.utc)
	return int(end.timestamp())


#============================================
def add_months(value: date, months: int) -> date:
	"""Shift a calendar date by whole months.

	The day-of-month is clamped to the target month length, so
	2024-01-31 plus one month is 2024-02-29.
	GNU date rolls over instead (2024-01-31 + 1 month = 2024-03-02), so
	countdowns from a day 29-31 can differ from date-based shell output.
	"""
	month_index = value.year * 12 + (value.month - 1) + months
	year, month_zero = divmod(month_index, 12)
	month = month_zero + 1
	day = min(value.day, calendar.monthrange(year, month)[1])
	return date(year, month, day)


#============================================
def utc_date(epoch: int) -> date:
	"""
	Convert epoch seconds to the UTC calendar date.
	"""
	return datetime.fromtimestamp(epoch, tz=timezone.utc).date()


#============================================
def date_epoch(value: date) -> int:
	"""
	Return the epoch of midnight UTC for one calendar date.
	"""
	midnight = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
	return int(midnight.timestamp())


#============================================
def calendar_diff(start_epoch: int, end_epoch: int) -> CalendarSpan:
	"""Return elapsed calendar time from start to end.

	Uses whole-month anchoring: take the month distance between the two
	UTC calendar dates, build an anchor at the start date plus that many
	months, and step back one month when the anchor lands after the end.
	Leftover days are counted from the anchor and floored at zero.

	Args:
		start_epoch: Start instant in epoch seconds.
		end_epoch: End instant in epoch seconds.

	Returns:
		CalendarSpan, or the zero span when end <= start.
	"""
	if end_epoch <= start_epoch:
		return ZERO_SPAN
	start_day = utc_date(start_epoch)
	end_day = utc_date(end_epoch)
	months = (end_day.year - start_day.year) * 12 + (end_day.month - start_day.month)
	anchor = date_epoch(add_months(start_day, months))
	if anchor > end_epoch:
		months -= 1
		anchor = date_epoch(add_months(start_day, months))
	days = (end_epoch - anchor) // SECONDS_PER_DAY
	if days < 0:
		days = 0
	years, months_left = divmod(months, 12)
	return CalendarSpan(years, months_left, days)


#============================================
def format_span(span: CalendarSpan) -> str:
	"""
	Render a span as "N yrs N mos N days".
	"""
	return f"{span.years} yrs {span.months} mos {span.days} days"


#============================================
def age_days(now_epoch: int, then_epoch: int) -> int:
	"""
	Return whole days between two instants, never negative.
	"""
	days = (now_epoch - then_epoch) // SECONDS_PER_DAY
	if days < 0:
		return 0
	return days


#============================================
def format_days_ago(days: int) -> str:
	"""
	Render a day count as today / 1 day ago / N days ago.
	"""
	if days <= 0:
		return "today"
	if days == 1:
		return "1 day ago"
	return f"{days} days ago"
