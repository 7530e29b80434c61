"""
Archive name templates.

A template may contain the placeholders ``{date:year}``, ``{date:month}``,
``{date:day}`` and ``{date:weekday}``. Backups resolve them against the
current UTC date; restores only expand the weekday into all seven
possibilities and otherwise look for the template verbatim.
"""

import re
from datetime import datetime, timezone
from typing import List, Optional


YEAR_PATTERN = re.compile(r'\{date:year\}')
MONTH_PATTERN = re.compile(r'\{date:month\}')
DAY_PATTERN = re.compile(r'\{date:day\}')
WEEKDAY_PATTERN = re.compile(r'\{date:weekday\}')

# Fixed English abbreviations so names do not depend on the process locale
WEEKDAYS = ('Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun')


def resolve_archive_name(template: str, now: Optional[datetime] = None) -> str:
    """
    Expand the date placeholders of a template.

    Args:
        template: Archive name template
        now: Date to use (default: current UTC time)

    Returns:
        Concrete archive name; unknown placeholders are kept as they are
    """
    if now is None:
        now = datetime.now(timezone.utc)

    name = YEAR_PATTERN.sub(f"{now.year:04d}", template)
    name = MONTH_PATTERN.sub(f"{now.month:02d}", name)
    name = DAY_PATTERN.sub(f"{now.day:02d}", name)
    name = WEEKDAY_PATTERN.sub(WEEKDAYS[now.weekday()], name)

    return name


def candidate_archive_names(template: str) -> List[str]:
    """
    List the archive names a restore should look for.

    Args:
        template: Archive name template

    Returns:
        Seven names (Monday first) for weekday templates, otherwise
        the template itself
    """
    if WEEKDAY_PATTERN.search(template):
        return [WEEKDAY_PATTERN.sub(weekday, template) for weekday in WEEKDAYS]

    return [template]


def literal_prefix(template: str) -> str:
    """Return the part of the template before its first placeholder."""
    index = template.find('{')
    if index < 0:
        return template
    return template[:index]


def strip_archive_suffixes(filename: str, compression_extension: str,
                           encryption_extension: str = '') -> str:
    """
    Undo the pipeline suffix chain of a stored file name.

    The encryption suffix is stripped first, then the compression suffix,
    mirroring the order in which they were appended.
    """
    name = filename
    if encryption_extension and name.endswith(encryption_extension):
        name = name[:-len(encryption_extension)]
    if compression_extension and name.endswith(compression_extension):
        name = name[:-len(compression_extension)]
    return name
