"""Adapters layer for Lab-Sieve.

Adapters implement the Port interfaces defined in the domain layer and talk
to external systems: the token endpoint, the bulk export endpoints and the
SMTP server.
"""
