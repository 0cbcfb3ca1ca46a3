"""
Setup script for knowledge-synth.

knowledge-synth turns transcribed meeting and document fragments into
deduplicated knowledge units:

1. Embedding backfill - Vectorize fragments and knowledge units
2. Clustering - Group similar fragments incrementally or per clustering session
3. Synthesis - Merge each group into knowledge units with an LLM

The 'ksynth' command is the operator entry point.
"""

from setuptools import find_packages, setup

setup(
    name="knowledge-synth",
    version="1.0.0",
    description="Incremental knowledge unit synthesis from embedded fragments",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["config"],
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # Database
        "sqlalchemy>=2.0.0",
        "psycopg2-binary>=2.9.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # Logging
        "loguru>=0.7.0",
        # Semantic
        "numpy>=1.24.0",
        "scikit-learn>=1.3.0",
        "sentence-transformers>=2.2.0",
        # AI synthesis
        "google-generativeai>=0.5.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
        "local-ai": [
            "ollama>=0.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ksynth=knowledge_synth.cli.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    keywords="knowledge-management embeddings clustering llm",
)
