"""
Counsel Booking Tests

Unit tests for the scheduling core and its HTTP layer. Google Calendar,
Redis and the database are replaced by mocks or in-memory SQLite, so no
external service is needed.

Running Tests:
    pip install -e ".[test]"
    pytest tests/unit -v

    # Run one module
    pytest tests/unit/test_reconciler.py -v
"""
