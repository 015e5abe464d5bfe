# Shared helpers: logging setup and the HTTP client used by all gateways
