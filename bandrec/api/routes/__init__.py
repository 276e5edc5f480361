"""Route modules for the BandRec API."""
