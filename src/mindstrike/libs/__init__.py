"""Shared helper libraries."""
