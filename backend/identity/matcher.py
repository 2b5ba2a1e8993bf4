"""
Identity Matcher

Pairs staff records with users by case-insensitive email equality. A staff
record is indexed under its company and personal email; a user may match
several staff records and all of them are returned. Pure functions only.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Tuple

from .models import StaffRecord, UserRecord

MatchPair = Tuple[StaffRecord, UserRecord]


def build_email_index(staff: Iterable[StaffRecord]) -> Dict[str, List[StaffRecord]]:
    """Index staff by each normalized email; records without emails are left out."""
    index: Dict[str, List[StaffRecord]] = defaultdict(list)
    for record in staff:
        for email in record.match_emails():
            index[email].append(record)
    return index


def match_user(user: UserRecord, index: Dict[str, List[StaffRecord]]) -> List[StaffRecord]:
    """Staff records matching one user, each at most once."""
    email = user.normalized_email
    if not email:
        return []
    return list(index.get(email, []))


def match(users: Iterable[UserRecord], staff: Iterable[StaffRecord]) -> List[MatchPair]:
    """
    Compute (staff, user) candidate links.

    A staff record sitting under both of its emails is still paired with a
    given user only once, since the lookup is by that user's single email.
    """
    index = build_email_index(staff)
    pairs: List[MatchPair] = []
    for user in users:
        for record in match_user(user, index):
            pairs.append((record, user))
    return pairs


def unmatched_users(users: Iterable[UserRecord], pairs: Iterable[MatchPair]) -> List[UserRecord]:
    """Users that appear in no pair."""
    matched_ids = {user.id for _, user in pairs}
    return [user for user in users if user.id not in matched_ids]
