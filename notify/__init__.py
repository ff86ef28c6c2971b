"""notify/ -- Outbound notification delivery (verification and recovery links).

Layer rule: notify/ imports only stdlib, third-party libraries, and core/.
auth/ and api/ import from notify/, not the other way around.
"""
