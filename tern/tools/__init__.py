"""Tools the model can call, and the registry that runs them."""
