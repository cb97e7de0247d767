"""Core domain package for subscope.

Core contains locking, the scan lifecycle, error classification and the
subscription detection engine without any storage- or transport-specific
code, keeping the business logic portable.
"""
