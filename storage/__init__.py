"""storage/ -- Object storage for uploaded supporting documents.

Layer rule: storage/ imports only stdlib and core/.
"""
