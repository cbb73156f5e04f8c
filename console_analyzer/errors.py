"""Exception types raised by the console analyzer."""


class ConsoleAnalyzerError(Exception):
    """Base class for all console analyzer errors."""


class MappingDecodeError(ConsoleAnalyzerError, ValueError):
    """A source map or its VLQ mappings could not be decoded."""


class RuleImportError(ConsoleAnalyzerError):
    """A serialized rule set could not be loaded."""


class CaptureFormatError(ConsoleAnalyzerError, ValueError):
    """A captured log or network record is malformed."""
