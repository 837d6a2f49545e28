"""Crawling: source adapters, file listers, ignore rules, incremental passes and their scheduler."""
