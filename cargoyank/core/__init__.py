"""Core components for the cargoyank application.

This package contains the configuration manager, the error type, the
package identity model, the index backend interface and the `CachedIndex`
that ties them together.
"""
