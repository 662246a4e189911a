"""Session state: domain records, repository, checkpoints, retention."""
