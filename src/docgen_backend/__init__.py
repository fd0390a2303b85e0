"""
Docgen Backend - batch document generation worker

This package runs a background worker that turns queued generation requests
into finished documents. For every work item it:

- Claims the item with a time-bounded lease so only one worker processes it
- Fetches the DOCX template(s) through a size-bounded LRU cache
- Merges the request data into the template(s), concatenating sections for
  composite documents
- Converts the merged DOCX to PDF with a headless LibreOffice process drawn
  from a bounded conversion pool
- Uploads the result and records success, or schedules a retry with backoff

Key Components:
    - main: FastAPI application exposing health and worker control endpoints
    - poller: Work item polling, locking, processing and retry scheduling
    - generator: Request validation and the merge/concatenate/convert pipeline
    - template_cache: LRU template cache and the single-flight template service
    - composer: DOCX merging and section concatenation
    - conversion: Bounded pool of office-suite conversion processes
    - database / content_store / store: Work item records and file storage
    - configuration: Layered config loading with OmegaConf
    - observability: Counters, gauges and dependency records

Usage:
    Run the API server with:
        uvicorn docgen_backend.main:app --host 0.0.0.0 --port 8000

    Or use the console script:
        docgen-backend
"""
