"""Transports: plain HTTP, pooled browsers and request scheduling."""
