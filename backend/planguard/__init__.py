"""
planguard - plan-based feature access for organizations.

Entitlements are derived on every read from the locally mirrored billing
state; a scheduled reconciliation job repairs drift against the billing
provider.
"""
