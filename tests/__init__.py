"""
Booking backend tests.

Running Tests:
    # Run all tests
    pytest tests -v

    # Run one module
    pytest tests/unit/test_booking_saga.py -v

Unit tests use in-memory fakes for the calendar and the repositories
(see conftest.py) and patch get_redis to None so the session store and
follow-up queue run on their in-memory fallback.
"""
