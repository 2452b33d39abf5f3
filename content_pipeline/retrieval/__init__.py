"""
检索模块

基于 Jaccard 相似度从静态语料库中检索参考样例。
"""

from .corpus import load_corpus
from .similarity import SimilarityRetriever, retrieve, similarity, tokenize

__all__ = ["SimilarityRetriever", "load_corpus", "retrieve", "similarity", "tokenize"]
