"""
Runtime: schema reconciliation, read cache, realtime bus and table access.

Import from the submodules directly (``appwrite_orm.runtime.cache`` etc.);
backends depend on ``query`` and ``validator`` from here.
"""
