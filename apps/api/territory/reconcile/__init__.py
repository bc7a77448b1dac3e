"""Workbook reconciliation pipeline for the territory data model."""
