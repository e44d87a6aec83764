"""Service layer: billing provider and SMS collaborators, reconcilers and retention."""
