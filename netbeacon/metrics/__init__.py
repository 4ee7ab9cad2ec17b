"""Prometheus-style metric registry and the loopback metrics HTTP server."""