"""
Services package for EPG Aggregator

Fetching, parsing, merging, caching and querying of XMLTV guide data.
Import the service modules directly; nothing is re-exported here.
"""
