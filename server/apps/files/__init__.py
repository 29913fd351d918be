"""Files app: ingestion of files and derivation of modifications."""
