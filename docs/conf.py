"""Sphinx configuration for the hillbayes API and CLI reference."""

project = "hillbayes"
copyright = "2026, hillbayes developers"  # noqa: A001
author = "hillbayes developers"
release = "0.1.0"
html_title = "hillbayes"

extensions = [
    "sphinx.ext.autodoc",
    "autodocsumm",
    "sphinx.ext.napoleon",
    "sphinx_autodoc_typehints",
    "sphinx_click",
]

# numpy-style docstrings throughout
napoleon_google_docstring = False
napoleon_use_ivar = False
autodoc_typehints = "description"
autodoc_default_options = {
    "members": True,
    "member-order": "bysource",
    "autosummary": True,
}

source_suffix = {".rst": "restructuredtext"}
exclude_patterns = ["_build"]

html_theme = "pydata_sphinx_theme"
