"""Crawling module for BandRec.

This module contains the SQLite graph store, the Bandcamp fetcher and the
orchestrator that drives per-user crawl jobs through their stages, together
with the progress reporter read by the status endpoint.
"""
