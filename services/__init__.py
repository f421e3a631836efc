# ========================================================
# services/__init__.py
# ========================================================
"""
Business Logic Services.

Every public coroutine takes the AppContext first and opens its own
UnitOfWork; the ledger and notification helpers take a session so
callers can compose them inside one transaction.

- ledger.py: wallet balance, atomic adjust, ledger rows
- wallet.py: two-phase top-up and withdrawal
- playtracker.py: pay / start / answer / finish state machine
- sampler.py: next-question selection
- settlement.py: ranking, prizes, cancellation, scheduler pass
- notifications.py: notification request emitter, user inbox
- referral.py: referral code redemption
- contests.py: contest create / activate / inactivate
- leaderboard.py: all-time player leaderboard
"""
