"""Foundation: errors, configuration, data model and the procedure registry."""
