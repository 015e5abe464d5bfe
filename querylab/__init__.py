"""QueryLab: adaptive query groups for retrieval.

Remembers every phrasing of a user intent, scores each phrasing by how much
relevant content it retrieves, and promotes the best one so live traffic
reuses it.
"""
