"""
Domain name validation
RFC 1035/1123 checks with IDNA (punycode) normalization
"""

import re
import logging
from typing import Any, Dict, List, Optional

import idna

from errors import ValidationError

logger = logging.getLogger(__name__)

MAX_DOMAIN_LENGTH = 253
MAX_LABEL_LENGTH = 63

_LABEL_RE = re.compile(r'^[a-z0-9-]+$')


def _to_ascii(domain_name: str) -> str:
    if domain_name.isascii():
        return domain_name.lower()
    return idna.encode(domain_name, uts46=True).decode('ascii').lower()


def _label_problem(label: str, position: str) -> Optional[str]:
    if len(label) > MAX_LABEL_LENGTH:
        return f'{position} too long: "{label}" ({len(label)} characters, maximum: {MAX_LABEL_LENGTH})'
    if label[0] == '-' or label[-1] == '-':
        return f'{position} cannot start or end with hyphen: "{label}"'
    if not _LABEL_RE.match(label):
        return f'{position} contains invalid characters: "{label}"'
    return None


def _invalid(error: str) -> Dict[str, Any]:
    return {'valid': False, 'error': error}


def validate_domain_rfc_compliant(domain_name: str) -> Dict[str, Any]:
    """
    Check a domain name against RFC 1035/1123 label rules

    Unicode names are converted to punycode first. Returns a dict with
    `valid` and either `error` or the normalized `domain`, its `labels`
    and `tld`.
    """
    if not isinstance(domain_name, str) or not domain_name.strip():
        return _invalid('Domain name is required and must be a non-empty string')

    candidate = domain_name.strip()
    if '..' in candidate:
        return _invalid('Domain name cannot contain consecutive dots')
    if candidate[0] == '.' or candidate[-1] == '.':
        return _invalid('Domain name cannot start or end with a dot')

    try:
        ascii_name = _to_ascii(candidate)
    except (idna.IDNAError, UnicodeError) as e:
        logger.debug(f"IDNA conversion rejected {candidate!r}: {e}")
        return _invalid(f'Invalid internationalized domain name: {e}')

    if len(ascii_name) > MAX_DOMAIN_LENGTH:
        return _invalid(f'Domain name too long: {len(ascii_name)} characters (maximum: {MAX_DOMAIN_LENGTH})')

    labels: List[str] = ascii_name.split('.')
    if len(labels) < 2:
        return _invalid('Domain must have at least 2 parts (e.g., "example.com")')

    last = len(labels) - 1
    for index, label in enumerate(labels):
        problem = _label_problem(label, 'TLD' if index == last else f'Label {index + 1}')
        if problem:
            return _invalid(problem)

    tld = labels[-1]
    if tld.isdigit():
        return _invalid(f'TLD cannot be all numeric: "{tld}"')
    if len(tld) < 2:
        return _invalid(f'TLD too short: "{tld}" (minimum: 2 characters)')

    return {'valid': True, 'domain': ascii_name, 'labels': labels, 'tld': tld}


def normalize_domain_name(domain_name: Any) -> str:
    """Return the lowercase ASCII form of a domain name or raise ValidationError"""
    result = validate_domain_rfc_compliant(domain_name)
    if not result['valid']:
        raise ValidationError(result['error'])
    return result['domain']
