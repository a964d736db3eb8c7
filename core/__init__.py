"""
Core Module Package.

Infrastructure the connectors depend on.

Components:
- clock: Time abstraction (system and simulated)
- exceptions: Error taxonomy
- retry: Exponential-backoff retry
- rate_limiter: Token-bucket admission control
- circuit_breaker: Fail-fast on failing providers
- config: Connector settings
- logging_utils: Logging setup and credential masking
"""
