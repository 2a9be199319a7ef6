"""Report document URL construction."""

from datetime import date, datetime

from collector.common.types import SourceType
from config.config import DEFAULT_FILENAME_TEMPLATE


def build_report_url(
    base_url: str,
    source_type: SourceType | str,
    report_date: date | datetime,
    filename_template: str = DEFAULT_FILENAME_TEMPLATE,
) -> str:
    """Build the URL of one day's report document.

    Plain concatenation of ``base_url`` and the rendered template; no slash
    is inserted or removed, so the result is fully determined by the inputs.

    Example:
        >>> build_report_url(
        ...     "https://www.spc.noaa.gov/climo/reports/", SourceType.HAIL, date(2026, 4, 1)
        ... )
        'https://www.spc.noaa.gov/climo/reports/260401_rpts_hail.csv'
    """
    source_type = SourceType(source_type)
    filename = filename_template.format(date=report_date, source_type=source_type.value)
    return f"{base_url}{filename}"
