"""Service layer: rate limiting, credential storage, anomaly detection and auditing."""
