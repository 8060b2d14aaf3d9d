"""Dual-mode test-context engine.

Decides per scenario whether tests run against disposable fixtures
(isolated) or live, marker-named records (production), hands test code a
uniform data context and gates every live mutation through safety checks.
"""
