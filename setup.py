from setuptools import setup, find_packages

setup(
    name="cl-knowledge-graph",
    version="0.3.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "pyyaml",
        # Authority weights
        "networkx>=3.0",
        # Vault watcher
        "watchdog>=3.0",
        # CLI progress
        "tqdm>=4.60",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "clgraph=cl_knowledge.cli:main",
        ],
    },
    description="Lifecycle-aware knowledge graph store for markdown vaults.",
)
