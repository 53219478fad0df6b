"""
Document lifecycle module.

Flow:
- Publishers upload a file; the document enters the Quality queue (IN_REVIEW, version 1 SUBMITTED)
- Quality reviews, requests changes, uploads edited versions and publishes
- Published documents show in the company library; Quality may archive or send them back
- Archived documents can be unarchived or permanently deleted

Every transition runs in a single DB transaction and is recorded in document_actions.
"""
