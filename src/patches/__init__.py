# src/patches/__init__.py — v1
