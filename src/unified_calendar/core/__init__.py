"""
コア - データモデルと例外定義
"""
