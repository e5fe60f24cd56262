"""
notify/ -- Outbound email and push delivery for the auth flows.

Both senders log instead of delivering when they are not configured, so a
local dev server works without SMTP or a push gateway.

Layer rule: notify/ imports only stdlib + third-party libraries.
"""
