"""Pydantic models for the export API."""
