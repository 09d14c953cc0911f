"""
Commit Watcher Service for CommitRelay.

This service is responsible for:
- Watching local Git repositories for new commits
- Extracting commit metadata and per-file line statistics
- Delivering commit stats to the collection service with retries
- Queueing undeliverable payloads on disk and replaying them later
"""

__version__ = "1.0.0"
__description__ = "Git commit watching and delivery service"
