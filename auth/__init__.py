"""auth/ -- Credential, verification, recovery and session workflows for ScholarGate.

Layer rule: auth/ imports only stdlib, third-party libraries, core/, and notify/.
It does NOT import from api/ or storage/.
api/ imports from auth/, not the other way around.
"""
