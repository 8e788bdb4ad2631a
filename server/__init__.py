"""HTTP API for the feed harvester (FastAPI app in server.main)."""
