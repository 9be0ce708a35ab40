"""
Market price sources.
"""
