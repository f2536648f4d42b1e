"""
portal-livesync test suite.

This package contains:
- unit/: Unit tests (in-memory backend, fake Supabase client)
- integration/: View sessions, dashboards and the HTTP layer end to end
"""
