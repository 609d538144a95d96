"""
Annotation API - REST backend for AI-generated study notes

This package provides a FastAPI-based web service that turns uploaded PDF
documents into study annotations. It enables:

- User registration and login with bearer tokens
- PDF uploads with synchronous text extraction and annotation generation
  against a local Ollama model server
- Optional text-to-speech (Amazon Polly) and asset storage (Amazon S3)
- Annotation listing, filtering, partial updates and deletion
- Live progress events over Server-Sent Events

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - annotation_manager: Annotation lifecycle and pipeline coordinator
    - extractors: Document text extraction (PyMuPDF)
    - generator: Ollama client and response parsing
    - publisher: Polly speech synthesis and S3 publishing
    - identity / tokens: User accounts and JWT session tokens
    - configuration: Config loading from config.yaml and the environment

Usage:
    Run the API server with:
        uvicorn annotation_api.main:app --reload --host 0.0.0.0 --port 8080
"""
