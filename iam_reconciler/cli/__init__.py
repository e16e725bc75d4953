"""
Command line interface for the IAM Reconciler.
"""
