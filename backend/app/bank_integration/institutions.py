"""
Institution Resolver

Translates an internal bank descriptor (name + country) into the
aggregator's institution id using best-effort string matching.
"""

import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)


# Common short names users pick in the bank selector, keyed by country.
# Values are institution names as the aggregator lists them.
INSTITUTION_ALIASES: Dict[str, Dict[str, List[str]]] = {
    'NO': {
        'dnb': ['DNB', 'DNB Bank ASA'],
        'nordea': ['Nordea', 'Nordea Bank Norge'],
        'sparebank 1': ['SpareBank 1 SR-Bank', 'SpareBank 1 SMN', 'SpareBank 1 Østlandet'],
        'sr-bank': ['SpareBank 1 SR-Bank'],
        'handelsbanken': ['Handelsbanken Norge'],
        'sbanken': ['Sbanken', 'DNB'],
        'bank norwegian': ['Bank Norwegian'],
        'storebrand': ['Storebrand Bank'],
    },
    'SE': {
        'seb': ['SEB', 'Skandinaviska Enskilda Banken'],
        'swedbank': ['Swedbank', 'Swedbank och Sparbankerna'],
        'handelsbanken': ['Handelsbanken', 'Svenska Handelsbanken'],
        'nordea': ['Nordea', 'Nordea Bank Abp'],
    },
    'DK': {
        'danske bank': ['Danske Bank', 'Danske Bank A/S'],
        'jyske': ['Jyske Bank'],
        'nordea': ['Nordea', 'Nordea Danmark'],
    },
    'FI': {
        'op': ['OP Financial Group', 'OP'],
        'nordea': ['Nordea', 'Nordea Bank Abp'],
    },
    'DE': {
        'sparkasse': ['Sparkasse', 'Berliner Sparkasse'],
        'deutsche bank': ['Deutsche Bank', 'Deutsche Bank AG'],
        'dkb': ['DKB', 'Deutsche Kreditbank'],
        'n26': ['N26', 'N26 Bank'],
    },
    'GB': {
        'hsbc': ['HSBC', 'HSBC UK', 'HSBC Personal'],
        'barclays': ['Barclays', 'Barclays Personal'],
        'lloyds': ['Lloyds', 'Lloyds Bank Personal'],
        'monzo': ['Monzo', 'Monzo Bank'],
    },
}


def _institution_names(institution: Dict[str, Any]) -> List[str]:
    names = [institution.get('name'), institution.get('display_name')]
    return [n.strip().lower() for n in names if isinstance(n, str) and n.strip()]


def _bank_names(bank: Dict[str, Any]) -> List[str]:
    names = [bank.get('name'), bank.get('display_name')]
    return [n.strip().lower() for n in names if isinstance(n, str) and n.strip()]


def find_institution(
    bank: Dict[str, Any],
    institutions: List[Dict[str, Any]]
) -> Optional[str]:
    """
    Find the aggregator institution id for a bank descriptor.

    Matching order:
    1. Exact (case-insensitive) name match
    2. Substring match in either direction, first hit wins
    3. Country alias table

    Args:
        bank: Bank descriptor with 'name', optional 'display_name' and 'country'
        institutions: Institution list from the aggregator ({'id', 'name', ...})

    Returns:
        Institution id, or None if nothing matches

    Example:
        >>> find_institution({'name': 'dnb', 'country': 'NO'}, [{'id': 'INST1', 'name': 'DNB'}])
        'INST1'
    """
    wanted = _bank_names(bank)
    if not wanted:
        return None

    for institution in institutions:
        if any(name in wanted for name in _institution_names(institution)):
            return institution.get('id')

    for institution in institutions:
        for name in _institution_names(institution):
            if any(w in name or name in w for w in wanted):
                logger.info(f"Partial institution match: {wanted[0]!r} -> {institution.get('name')!r}")
                return institution.get('id')

    country = (bank.get('country') or '').upper()
    aliases = INSTITUTION_ALIASES.get(country, {})
    for w in wanted:
        for alias in aliases.get(w, []):
            alias_lower = alias.lower()
            for institution in institutions:
                if alias_lower in _institution_names(institution):
                    logger.info(f"Alias institution match: {w!r} -> {institution.get('name')!r}")
                    return institution.get('id')

    return None
