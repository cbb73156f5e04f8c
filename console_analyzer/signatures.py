"""Error signature rules and the classifier that matches log messages against them.

Rules are evaluated in list order and the first match wins. User rules are
inserted ahead of the built-ins so they can override them without removing them.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Pattern

import requests

from .errors import RuleImportError
from .models import SEVERITIES

logger = logging.getLogger("console_analyzer.signatures")

_FLAG_MAP = {
    'i': re.IGNORECASE,
    'm': re.MULTILINE,
    's': re.DOTALL,
}


def _compile(pattern: str, flags: str) -> Pattern[str]:
    re_flags = 0
    for flag in flags:
        re_flags |= _FLAG_MAP.get(flag, 0)
    return re.compile(pattern, re_flags)


@dataclass
class SignatureRule:
    """A message pattern mapped to a diagnosis."""
    pattern: str
    category: str
    severity: str
    causes: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    flags: str = "i"  # JavaScript-style regex flags: i, m, s

    def __post_init__(self):
        if self.severity not in SEVERITIES:
            raise ValueError(f"Invalid severity {self.severity!r} for rule {self.category!r}")
        self._regex = _compile(self.pattern, self.flags)

    def matches(self, message: str) -> bool:
        return self._regex.search(message) is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pattern': self.pattern,
            'flags': self.flags,
            'category': self.category,
            'severity': self.severity,
            'causes': list(self.causes),
            'suggestions': list(self.suggestions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignatureRule":
        """Build a rule from its serialized form.

        Accepts the widget's original key names (``patternSource``,
        ``patternFlags``, ``errorType``, ``possibleCauses``) as well.
        """
        if not isinstance(data, dict):
            raise ValueError("rule must be an object")

        pattern = data.get('pattern', data.get('patternSource'))
        category = data.get('category', data.get('errorType'))
        if not isinstance(pattern, str) or not pattern:
            raise ValueError("rule is missing 'pattern'")
        if not isinstance(category, str) or not category:
            raise ValueError("rule is missing 'category'")

        causes = data.get('causes', data.get('possibleCauses', []))
        suggestions = data.get('suggestions', [])
        if not isinstance(causes, list) or not isinstance(suggestions, list):
            raise ValueError(f"rule {category!r}: causes and suggestions must be lists")

        return cls(
            pattern=pattern,
            category=category,
            severity=str(data.get('severity', 'medium')),
            causes=[str(c) for c in causes],
            suggestions=[str(s) for s in suggestions],
            flags=str(data.get('flags', data.get('patternFlags', 'i'))),
        )


# Built-in signatures, most specific first
BUILTIN_RULE_DEFINITIONS: List[Dict[str, Any]] = [
    {
        'pattern': r'\[Network Error\].*Cannot connect to server|Failed to fetch|net::ERR_NAME_NOT_RESOLVED|'
                   r'net::ERR_CONNECTION_REFUSED|Cannot connect to server',
        'category': 'Network Connection Error',
        'severity': 'critical',
        'causes': [
            'DNS lookup failed - the domain does not exist or is misspelled',
            'The server is down or unreachable',
            'A firewall or proxy is blocking the connection',
            'The network connection was lost',
        ],
        'suggestions': [
            'Check that the domain in the URL is correct',
            'Check that the server is running',
            'Check the network connection',
            'Inspect the request in the browser Network tab',
        ],
    },
    {
        'pattern': r'\[HTTP 4\d{2}\]',
        'category': 'HTTP Client Error',
        'severity': 'high',
        'causes': [
            'The authentication token is missing or expired (401)',
            'The resource is not accessible with the current permissions (403)',
            'The requested resource does not exist (404)',
            'The request payload is malformed (400)',
        ],
        'suggestions': [
            'Check the authentication state and sign in again if needed',
            'Check that the API endpoint URL is correct',
            'Check the request parameters and body format',
            'Check the API documentation for required headers',
        ],
    },
    {
        'pattern': r'\[HTTP 5\d{2}\]',
        'category': 'HTTP Server Error',
        'severity': 'critical',
        'causes': [
            'The server hit an internal error (500)',
            'The server is overloaded (503)',
            'A gateway timed out (504)',
            'The server is misconfigured',
        ],
        'suggestions': [
            'Retry the request after a short delay',
            'Check the server logs',
            'Contact the backend team',
            'Check that the request data can be processed by the server',
        ],
    },
    {
        'pattern': r'\[Network Timeout\]|timeout|ETIMEDOUT|net::ERR_TIMED_OUT',
        'category': 'Network Timeout',
        'severity': 'high',
        'causes': [
            'The server responds too slowly',
            'The network connection is unstable',
            'The request payload is too large',
            'The server is overloaded',
        ],
        'suggestions': [
            'Increase the request timeout',
            'Reduce the request payload size',
            'Check the network connection',
            'Monitor the server health',
        ],
    },
    {
        'pattern': r'CORS|Cross-Origin|Access-Control-Allow',
        'category': 'CORS Error',
        'severity': 'high',
        'causes': [
            'The server does not send CORS headers',
            'The request came from an origin that is not allowed',
            'The HTTP method is not allowed by the CORS policy',
            'A custom header was blocked by the CORS policy',
        ],
        'suggestions': [
            'Check the server CORS configuration',
            'Check that Access-Control-Allow-Origin is set correctly',
            'Consider routing the request through a proxy',
            'Use a development proxy to avoid cross-origin requests locally',
        ],
    },
    {
        'pattern': r'TypeError|Cannot read propert(y|ies) of (undefined|null)|is not a function|is not defined',
        'category': 'Type Error',
        'severity': 'high',
        'causes': [
            'A property of null or undefined was accessed',
            'A value that is not a function was called',
            'A variable was not declared',
            'Asynchronous data was used before it finished loading',
        ],
        'suggestions': [
            'Use optional chaining (?.) to access nested values safely',
            'Check that variables are declared and initialized',
            'Check the structure of the API response',
            'Handle the loading state of asynchronous data',
        ],
    },
    {
        'pattern': r'ReferenceError|is not defined',
        'category': 'Reference Error',
        'severity': 'high',
        'causes': [
            'An undeclared variable was referenced',
            'A variable was accessed outside its scope',
            'A module was not imported correctly',
        ],
        'suggestions': [
            'Check the variable name for typos',
            'Check that the variable is declared before use',
            'Check that the required module is imported',
        ],
    },
    {
        'pattern': r'SyntaxError|Unexpected token|JSON\.parse',
        'category': 'Syntax Error',
        'severity': 'high',
        'causes': [
            'The JSON payload is malformed',
            'The JavaScript source has a syntax error',
            'The API response has an unexpected format',
        ],
        'suggestions': [
            'Check the JSON data format',
            'Inspect the API response body',
            'Review the code syntax',
        ],
    },
    {
        'pattern': r'RangeError|Maximum call stack|Invalid array length',
        'category': 'Range Error',
        'severity': 'critical',
        'causes': [
            'Infinite recursion',
            'An array size exceeded the allowed range',
            'A function argument is outside its allowed range',
        ],
        'suggestions': [
            'Check that recursive functions have a termination condition',
            'Check for infinite loops',
            'Limit the size of the data being processed',
        ],
    },
    {
        'pattern': r'React|useState|useEffect|hook|render|component',
        'category': 'React Error',
        'severity': 'medium',
        'causes': [
            'The rules of hooks were violated',
            'An error was thrown while rendering a component',
            'A prop of the wrong type was passed',
        ],
        'suggestions': [
            'Call hooks only at the top level of a component',
            'Check the useEffect dependency array',
            'Validate prop types',
        ],
    },
    {
        'pattern': r'Unhandled Promise|async|await|Promise',
        'category': 'Async Error',
        'severity': 'medium',
        'causes': [
            'A promise was rejected without a handler',
            'An async function threw an exception',
            'An asynchronous operation failed',
        ],
        'suggestions': [
            'Wrap awaited calls in try/catch',
            'Attach .catch() handlers to promises',
            'Add an error boundary',
        ],
    },
    {
        'pattern': r'401|Unauthorized',
        'category': 'Authentication Error',
        'severity': 'medium',
        'causes': [
            'The authentication token is invalid or expired',
            'The user is not signed in',
            'The user lacks the required permission',
        ],
        'suggestions': [
            'Check the sign-in state',
            'Refresh the authentication token',
            'Check the user permissions',
        ],
    },
    {
        'pattern': r'403|Forbidden',
        'category': 'Authorization Error',
        'severity': 'medium',
        'causes': [
            'The user has no permission for this resource',
            'Access to the resource is forbidden',
        ],
        'suggestions': [
            'Check the user permissions',
            'Contact an administrator',
        ],
    },
    {
        'pattern': r'404|Not Found',
        'category': 'Not Found Error',
        'severity': 'medium',
        'causes': [
            'The requested resource could not be found',
            'The API endpoint does not exist',
            'The URL is wrong',
        ],
        'suggestions': [
            'Check that the URL is correct',
            'Check that the API endpoint exists',
            'Check the routing configuration',
        ],
    },
    {
        'pattern': r'500|Internal Server Error',
        'category': 'Server Error',
        'severity': 'high',
        'causes': [
            'The server raised an internal error',
            'The backend logic failed',
        ],
        'suggestions': [
            'Check the server logs',
            'Contact the backend developers',
            'Check that the request data is valid',
        ],
    },
    {
        'pattern': r'deprecated|warning|warn',
        'category': 'Deprecation Warning',
        'severity': 'low',
        'causes': [
            'A deprecated API is in use',
            'The feature will be removed in a future version',
        ],
        'suggestions': [
            'Migrate to the recommended replacement API',
            'Check the library documentation',
        ],
    },
]


def builtin_rules() -> List[SignatureRule]:
    """Fresh copies of the built-in rules, in priority order."""
    return [SignatureRule.from_dict(d) for d in BUILTIN_RULE_DEFINITIONS]


def export_rules_to_json(rules: List[SignatureRule]) -> str:
    return json.dumps([r.to_dict() for r in rules], indent=2, ensure_ascii=False)


def import_rules_from_json(text: str) -> List[SignatureRule]:
    """Parse a serialized rule list.

    Raises:
        RuleImportError: if the text is not valid JSON or any rule is invalid.
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise RuleImportError(f"Rule set is not valid JSON: {e}") from e

    if not isinstance(data, list):
        raise RuleImportError("Rule set must be a JSON list")

    rules: List[SignatureRule] = []
    for index, item in enumerate(data):
        try:
            rules.append(SignatureRule.from_dict(item))
        except (ValueError, re.error) as e:
            raise RuleImportError(f"Rule #{index}: {e}") from e
    return rules


class SignatureClassifier:
    """Owns an ordered rule list; first matching rule wins."""

    def __init__(self, rules: Optional[List[SignatureRule]] = None):
        self._rules: List[SignatureRule] = list(rules) if rules is not None else builtin_rules()

    def __len__(self) -> int:
        return len(self._rules)

    def classify(self, message: str) -> Optional[SignatureRule]:
        """Return the first rule whose pattern matches the message."""
        if not message:
            return None
        for rule in self._rules:
            if rule.matches(message):
                return rule
        return None

    def add_rule(self, rule: SignatureRule) -> None:
        """Add a rule ahead of all existing rules."""
        self._rules.insert(0, rule)

    def remove_rule(self, category: str) -> int:
        """Remove every rule with the given category. Returns the count removed."""
        before = len(self._rules)
        self._rules = [r for r in self._rules if r.category != category]
        return before - len(self._rules)

    def list_rules(self) -> List[SignatureRule]:
        return list(self._rules)

    def reset_rules(self) -> None:
        """Restore exactly the built-in rules, dropping all additions."""
        self._rules = builtin_rules()

    def export_json(self) -> str:
        return export_rules_to_json(self._rules)

    def import_json(self, text: str, replace: bool = False) -> int:
        """Load serialized rules ahead of the built-ins.

        The new list is fully built before it is swapped in, so a failed import
        leaves the current rules untouched.

        Args:
            text: JSON produced by export_json (or the widget's pattern export).
            replace: Use only the imported rules, without the built-ins.

        Returns:
            Number of rules imported.

        Raises:
            RuleImportError: on malformed input.
        """
        imported = import_rules_from_json(text)
        self._rules = imported if replace else imported + builtin_rules()
        logger.info("Imported %d signature rules", len(imported))
        return len(imported)

    def load_rules_from_url(self, url: str, session: Optional[requests.Session] = None,
                            timeout: int = 10) -> int:
        """Fetch a serialized rule list over HTTP and import it.

        Raises:
            RuleImportError: if the fetch fails or the payload is invalid.
        """
        try:
            resp = (session or requests).get(url, timeout=timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise RuleImportError(f"Failed to fetch rules from {url}: {e}") from e
        return self.import_json(resp.text)
