"""Clinic booking services."""
