"""FastAPI application module for BandRec.

This module contains the FastAPI application, route handlers, exception
taxonomy and logging setup for the recommendation service.
"""
