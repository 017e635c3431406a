"""taskweave.workflows — definition source: paths, templates, validation, and lifecycle."""
