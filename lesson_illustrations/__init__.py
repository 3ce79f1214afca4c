"""
Progressive illustration resolution for generated courses.

This package orchestrates:
1. Candidate image search (Wikimedia Commons + Pixabay)
2. Vision model verification with keyword negotiation
3. Placeholder fallback and per-keyword memoization
4. Background module generation with progressive merging
5. On-demand image selection per module
"""
