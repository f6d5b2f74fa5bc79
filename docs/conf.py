# Configuration file for the Sphinx documentation builder.

import os
import sys

# Add scripts directory to Python path
sys.path.insert(0, os.path.abspath("../scripts"))

# -- Project information -----------------------------------------------------

project = "chat-completions-gateway"
copyright = "2025, chat-completions-gateway contributors"
author = "chat-completions-gateway contributors"
release = "1.0.0"

# -- General configuration ---------------------------------------------------

extensions = [
    "sphinx.ext.autodoc",  # API reference from module docstrings
    "sphinx.ext.napoleon",  # Google style Args/Returns/Raises sections
    "sphinxcontrib.mermaid",  # Request pipeline diagram
    "myst_parser",  # Markdown pages
]

# Render ```mermaid fences in index.md as diagrams
myst_fence_as_directive = ["mermaid"]

source_suffix = {
    ".rst": "restructuredtext",
    ".md": "markdown",
}

root_doc = "index"
exclude_patterns = ["_build"]

# -- Options for HTML output -------------------------------------------------

html_theme = "sphinx_rtd_theme"

# -- Extension configuration -------------------------------------------------

autodoc_default_options = {
    "members": True,
    "member-order": "bysource",
}

napoleon_google_docstring = True
napoleon_numpy_docstring = False
