"""
Scanning Module

Vulnerability scanning of images through Clair.

Architecture:
- clair_api: HTTP client for the Clair v1 layer API
- security_scanner: per-image scan orchestration and result caching
- models: Clair wire formats and the normalized ScanResult
"""
