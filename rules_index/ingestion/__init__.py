"""
Indexing pipeline for tabletop-wargame rulebooks.

Modules
-------
config        – Pipeline-specific settings (chunk sizes, thresholds, lease …)
errors        – Exception hierarchy shared by the pipeline, store and API
schemas       – Pydantic models for Source, Page, Section, Chunk, Table, Dataset
content       – Typed (discriminated-union) content variants for stored tables
pdf_parser    – Native text-layer extraction (PyMuPDF)
text_cleaner  – Header/footer stripping, artifact cleanup, pseudo-pages
keywords      – Domain vocabulary for keyword extraction
sections      – Heading detection and section page spans
chunker       – Section-aware chunking with overlap and score hints
tables        – Roll / stats / equipment / generic table detectors
datasets      – Aggregation of same-type tables into datasets
quality       – Empty-page and scanned-source checks
store         – SQLite persistence with an atomic index swap
pipeline      – End-to-end orchestrator wiring everything together
"""
