# ABOUTME: Image updater webhook package initialization
# ABOUTME: Exposes version information

"""
Image updater webhook - GitOps tag bumps over HTTP.

=============================================================================
WHAT DOES IT DO?
=============================================================================

A CI pipeline finishes building `registry.example.com/web:1.4.2` and calls:

    POST /
    X-Key: <shared secret>

    {"deployment": "web", "tag_name": "1.4.2", "authorized_by": "ci"}

The server clones the git repository holding the `web` deployment's
kustomization, changes the `newTag` of the configured images to `1.4.2`
(leaving every other byte of the file alone), commits, pushes, and answers
200. If Argo CD is configured it then waits for Argo CD to notice the new
commit and triggers a sync of the application.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

image_updater/
├── __init__.py          <- YOU ARE HERE: Package entry point
├── config.py            <- Settings: YAML file, environment, validation
├── server.py            <- Starlette app factory and CLI entry point
├── webhook.py           <- Payload decoding and request dispatch
├── repository.py        <- Clone, commit and push with GitPython
├── deployment.py        <- Kustomization tag rewriting, commit templates
└── utils/
    ├── __init__.py      <- Utils subpackage marker
    ├── client.py        <- HTTP client for the Argo CD REST API
    ├── sync.py          <- Argo CD sync sessions with retry
    ├── logging.py       <- Structured logging with audit trails
    ├── metrics.py       <- Prometheus counters and histograms
    └── safety.py        <- IP allowlist and shared secret
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
