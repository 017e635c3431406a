"""taskweave.api — FastAPI application and routes."""
