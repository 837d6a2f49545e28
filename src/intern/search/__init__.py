"""
Indexing and query package.

- analyzers: tokenizer and filters (accent folding, case folding, stop words, stemming)
- normalizer: RawDocument -> IndexableDocument
- index_store: SQLite postings store with per-document writes and snapshot reads
- catalog / locks: in-memory catalog and per-doc_id write locks
- query_parser / query_engine: boolean + phrase queries ranked by TF-IDF
- stats / phrase / snippet: scoring, positional matching and result previews
"""
