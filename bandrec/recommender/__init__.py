"""Recommendation module for BandRec.

This module builds the neighbourhood of a crawled user from the collection
graph and scores the releases that neighbourhood collected by blending global
popularity with personal affinity.
"""
