"""Embeddings, vector similarity search and offline clustering."""
