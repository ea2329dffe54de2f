"""Unit tests for the FuelIntel monitoring web app.

Testing pattern:
    - Use FastAPI's TestClient against create_monitoring_app()
    - Mock the government API client and database check
    - Assert status codes and JSON bodies
"""
