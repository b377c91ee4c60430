"""Search ranking and result fusion components.

Contents
- ``fusion``: weighted score fusion of lexical and vector results
"""
