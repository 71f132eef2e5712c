class ManifestPersistenceError(Exception):
    """
    Exception raised when the build manifest cannot be read from or written to disk.
    """

    pass
