"""Pure domain code: models, ports, errors and text parsers."""
