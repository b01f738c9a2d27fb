"""Prometheus metrics for the catalog ingestion service."""

from prometheus_client import Counter, Histogram, Info

# Application info
app_info = Info("catalog_ingest", "Catalog ingestion service info")
app_info.info({"version": "0.1.0", "name": "catalog-ingest"})

# Page fetch metrics
page_fetches_total = Counter(
    "catalog_page_fetches_total",
    "Total number of source page fetch attempts",
    ["kind", "status"],
)

page_fetch_duration_seconds = Histogram(
    "catalog_page_fetch_duration_seconds",
    "Time spent fetching source pages",
    ["kind"],
    buckets=[0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

# Extraction metrics
extractions_total = Counter(
    "catalog_extractions_total",
    "Page extractions by page kind and the path that produced the data",
    ["kind", "source"],
)

images_stored_total = Counter(
    "catalog_images_stored_total",
    "Image downloads by kind and outcome",
    ["kind", "status"],
)

# Import metrics
import_records_total = Counter(
    "catalog_import_records_total",
    "Import records processed by outcome",
    ["outcome"],  # created, duplicate, error
)

import_jobs_total = Counter(
    "catalog_import_jobs_total",
    "Import jobs finished by terminal status",
    ["status"],
)

import_job_duration_seconds = Histogram(
    "catalog_import_job_duration_seconds",
    "Wall time of import job runs",
    buckets=[10, 30, 60, 120, 300, 600, 1800, 3600],
)

# Category sync metrics
category_sync_changes_total = Counter(
    "catalog_category_sync_changes_total",
    "Category sync changes by type and mode",
    ["type", "mode"],  # create/update/unchanged, preview/apply
)
