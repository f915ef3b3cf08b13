"""auth/ -- Authentication, download tokens and authorization for FileGate.

Layer rule: auth/ imports from core/ and from stdlib + third-party libraries.
It does NOT import from api/, gateway/, or audit/. The authorizer reaches the
resource store only through the AssignmentLookup protocol, never by import.
api/ and gateway/ import from auth/, not the other way around.
"""
