"""auth/ -- Authentication for the LedgerGuard HTTP API.

Turns a login or a bearer token into a RequestContext. Authorization
decisions stay in ledger/policy.py; this package only establishes identity.

Layer rule: auth/ imports from core/ and ledger/ plus third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
