"""auth/ -- Authentication and identity-linking core for pakreq.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/, web/, or core/. Configuration values arrive
through constructors; api/ and web/ import from auth/, not the other way around.
"""
