"""
Event ingestion: decoders, checkpoints, the chunked backfill engine and the
per-event processors.
"""
