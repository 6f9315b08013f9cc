"""
Funding Ingest - R&D funding announcement ingestion pipeline.

Architecture:
- core/: Stable foundation (models, errors, HTTP client, normalizers, hashing)
- jobs/: Job lifecycle (state machine, processor, repositories)
- extractors/: Attachment text recovery and field extraction
- classifier/: Industry, regional and announcement-type passes
- parsers/: Detail page parsing
- plugins/: Document formats (PDF, HWP, HWPX) and the conversion service
- config/: Environment settings and YAML taxonomy
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
