"""Generation provider clients.

Each client wraps one provider's web API: upload tokens, task submission
and history lookups used by the poller.
"""
