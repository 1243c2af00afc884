"""
Secret Santa matcher with a mentorship bias.

1. Seniors are paired with Juniors first (as many as possible)
2. Everybody left over is matched by a random derangement
3. No one ever gives to themselves
"""

import logging
import random

logger = logging.getLogger(__name__)

# =====================
# CONFIG
# =====================

MAX_RETRIES = 100

JUNIOR = "junior"
MID = "mid"
SENIOR = "senior"

# =====================
# TIERS
# =====================

def normalize_tier(level):
    # anything unrecognized counts as Mid
    if isinstance(level, str):
        level = level.lower()
        if level in (JUNIOR, SENIOR):
            return level
    return MID

def partition_by_tier(participants):
    juniors, mids, seniors = [], [], []
    for p in participants:
        tier = normalize_tier(p.get("expertise_level"))
        if tier == JUNIOR:
            juniors.append(p["email"])
        elif tier == SENIOR:
            seniors.append(p["email"])
        else:
            mids.append(p["email"])
    return juniors, mids, seniors

# =====================
# MATCHING
# =====================

def shuffled(items, rng):
    items = list(items)
    rng.shuffle(items)
    return items

def run_match(participants, rng=None, max_retries=MAX_RETRIES):
    """
    Returns {giver_email: receiver_email} covering every participant,
    or None if no valid matching was found within max_retries.

    An empty roster gives an empty (successful) matching.
    """
    if rng is None:
        rng = random.Random()

    if not participants:
        return {}

    emails = [p["email"] for p in participants]
    juniors, _, seniors = partition_by_tier(participants)

    # Senior -> Junior priority pass
    assignments = dict(zip(shuffled(seniors, rng), shuffled(juniors, rng)))

    taken = set(assignments.values())
    givers = [e for e in emails if e not in assignments]
    receivers = [e for e in emails if e not in taken]

    for _ in range(max_retries):
        candidate = shuffled(receivers, rng)
        if any(g == r for g, r in zip(givers, candidate)):
            continue

        assignments.update(zip(givers, candidate))
        return assignments

    logger.error(
        "Failed to find valid matching after %d retries (%d participants)",
        max_retries, len(participants)
    )
    return None

# =====================
# CHECKS
# =====================

def verify_derangement(assignments):
    return all(giver != receiver for giver, receiver in assignments.items())

def is_complete_match(emails, assignments):
    emails = set(emails)
    receivers = list(assignments.values())
    return (
        set(assignments) == emails
        and len(receivers) == len(set(receivers))
        and set(receivers) == emails
        and verify_derangement(assignments)
    )
