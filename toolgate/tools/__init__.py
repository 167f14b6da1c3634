"""Operation sets published to the model: generated CRUD operations and privileged ones."""
