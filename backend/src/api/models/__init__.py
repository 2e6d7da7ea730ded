"""Pydantic schemas for API request/response models."""

from .brokers import *
