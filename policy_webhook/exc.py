class ApplicationError(Exception):
    pass


class ConfigurationError(ApplicationError):
    pass


class EncodingError(ApplicationError):
    """The admission response could not be built."""
