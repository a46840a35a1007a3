"""Session, value models, errors and the analysis engine."""
