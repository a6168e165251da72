"""Exception hierarchy for Tech Roadmap."""


class RoadmapError(Exception):
    """Base exception for roadmap errors."""

    pass


class ConfigurationError(RoadmapError):
    """Required configuration is missing or stored configuration is malformed."""

    pass


class InvalidConfigError(ConfigurationError):
    """Datasource configuration is invalid."""

    pass


class SecretError(RoadmapError):
    """A stored credential could not be read."""

    pass


class InvalidSecretPayload(SecretError):
    """Ciphertext does not have the expected nonce.tag.data shape."""

    pass


class AuthenticationFailure(SecretError):
    """Ciphertext failed the authentication tag check."""

    pass


class CsvParseError(RoadmapError):
    """CSV text could not be parsed."""

    pass


class InvalidUrlError(RoadmapError):
    """Work item URL does not match a known Azure DevOps shape."""

    pass


class DatasourceError(RoadmapError):
    """Remote datasource call failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationError(DatasourceError):
    """Azure DevOps rejected or was not given a credential."""

    pass


class UnreachableError(DatasourceError):
    """Azure DevOps organization cannot be reached."""

    pass


class RateLimitError(DatasourceError):
    """Azure DevOps rate limit exceeded."""

    pass


class InvalidQueryError(DatasourceError):
    """Azure DevOps rejected the WIQL query."""

    pass
