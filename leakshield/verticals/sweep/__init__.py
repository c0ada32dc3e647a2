"""
Sweeping package registries for leaked AWS credentials.

Registries are polled for new releases, each release is downloaded and
scanned for access key / secret key pairs, and pairs that STS accepts are
reported as findings.
"""
