"""Package version and config file schema version for llm-spider."""

__all__ = ["__version__", "CONFIG_SCHEMA_VERSION"]

#: Released as llm-spider on the package index.
__version__ = "0.1.0"

#: Bumped when a JSON config written for an older release would be read differently.
#: SpiderConfig.from_file refuses files with a higher number.
CONFIG_SCHEMA_VERSION = 1
