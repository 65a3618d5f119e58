from setuptools import setup, find_packages

setup(
    name="ckg",
    version="1.0.0",
    packages=find_packages(include=["ckg", "ckg.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pyyaml",
        # Graph store and analytics
        "aiosqlite>=0.19",
        "networkx>=3.0",
        "numpy",
        # Extraction
        "tree-sitter>=0.25",
        "tree-sitter-python",
        "tree-sitter-javascript",
        "tree-sitter-typescript",
        "tree-sitter-java",
        "tree-sitter-go",
        "tree-sitter-rust",
        "watchdog>=3.0",
        "tqdm>=4.60",
    ],
    extras_require={
        # Remote embeddings (install separately when needed)
        "semantic": [
            "openai>=1.0",
        ],
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23",
        ],
    },
    description="Code Knowledge Graph: symbol graph, semantic index and LLM context builder.",
)
