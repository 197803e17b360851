"""
Test Suite for Story Delivery

- delivery/ - ledger, dependency resolution, CI monitoring, merging and the
  end-to-end PR pipeline
"""
