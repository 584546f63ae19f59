"""
HTTP adapter (FastAPI) for the extraction pipeline service.
"""
