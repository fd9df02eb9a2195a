"""DOM parsing, querying and value extraction."""
