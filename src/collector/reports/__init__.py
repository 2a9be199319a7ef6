"""Report retrieval, decoding and ingestion.

Import from submodules:
    from collector.reports.fetcher import ReportFetcher
    from collector.reports.ingest import ReportIngestor
"""

__all__: list[str] = []
