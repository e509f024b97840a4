"""
Stemvault

Storage accounting and asset lifecycle core for a producer platform: users
upload audio and project files into a per-user folder library backed by
S3-compatible (or local) storage, within a storage quota.

Repository Structure:
- shared/: Models, constants, errors, configuration, database and event bus
- storage/: Object-store providers and signed URL issuing
- library/: Folder/file repository, quota accounting, uploads, duration
  recovery and listening presence
- tests/: Unit and integration tests

License: MIT
"""
