"""
Data Models and Schemas

Pydantic models for data validation and serialization.
"""
