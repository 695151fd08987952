"""Utility modules for the cargoyank application.

This package contains helpers for locating the crates.io index on disk,
decoding index entries and cargo's cache files, locking the local index
and reading `Cargo.lock` files.
"""
