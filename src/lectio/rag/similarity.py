"""Similarity calculations over embedding vectors.

Pure functions: cosine similarity, ranking, pairwise matrices,
threshold-based clustering, and descriptive statistics.
"""

import math
from collections.abc import Iterable, Mapping, Sequence
from typing import Optional

import numpy as np

from lectio.models.rag import Cluster, EmbeddingVector, SimilarityResult, SimilarityStats
from lectio.rag.exceptions import DimensionMismatchError

Vector = Sequence[float]


def cosine_similarity(a: Vector, b: Vector) -> float:
    """Calculate cosine similarity between two vectors.

    Returns a value between -1 and 1, where 1 means identical direction,
    0 orthogonal and -1 opposite. A zero-magnitude vector scores exactly 0.

    Raises:
        DimensionMismatchError: If the vectors differ in length
    """
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b))

    vec_a = np.asarray(a, dtype=np.float64)
    vec_b = np.asarray(b, dtype=np.float64)

    magnitude = math.sqrt(float(np.dot(vec_a, vec_a))) * math.sqrt(float(np.dot(vec_b, vec_b)))
    if magnitude == 0:
        return 0.0

    score = float(np.dot(vec_a, vec_b)) / magnitude
    # Rounding can push parallel vectors a hair past the unit interval
    return max(-1.0, min(1.0, score))


def cosine_similarities(query: Vector, matrix: np.ndarray) -> np.ndarray:
    """Score every row of ``matrix`` against ``query`` in one pass.

    Zero-magnitude rows (or a zero query) score 0.
    """
    query_vec = np.asarray(query, dtype=np.float64)
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float64)
    if matrix.shape[1] != query_vec.shape[0]:
        raise DimensionMismatchError(query_vec.shape[0], matrix.shape[1])

    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_vec)
    dots = matrix @ query_vec
    scores = np.zeros_like(dots)
    np.divide(dots, norms, out=scores, where=norms != 0)
    return np.clip(scores, -1.0, 1.0)


def calculate_similarities(
    query_vector: Vector,
    targets: Iterable[tuple[str, str, Vector]],
) -> list[SimilarityResult]:
    """Score ``(id, text, vector)`` targets against a query and rank them.

    Results are sorted by descending score (stable for ties) and carry
    1-indexed sequential ranks.
    """
    results = [
        SimilarityResult(
            paragraph_id=target_id,
            text=text,
            score=cosine_similarity(query_vector, vector),
            rank=0,
        )
        for target_id, text, vector in targets
    ]

    results.sort(key=lambda r: r.score, reverse=True)
    for index, result in enumerate(results):
        result.rank = index + 1

    return results


def find_similar_paragraphs(
    query_embedding: EmbeddingVector,
    candidates: Mapping[str, EmbeddingVector],
    min_score: float = 0.5,
    max_results: int = 10,
    exclude_ids: Optional[Iterable[str]] = None,
) -> list[SimilarityResult]:
    """Find candidates similar to a query embedding.

    Candidates are assumed to come from the same model version as the query.
    """
    excluded = set(exclude_ids or ())
    targets = [
        (candidate_id, embedding.text, embedding.vector)
        for candidate_id, embedding in candidates.items()
        if candidate_id not in excluded
    ]

    results = calculate_similarities(query_embedding.vector, targets)
    return [r for r in results if r.score >= min_score][:max_results]


def calculate_similarity_matrix(embeddings: Sequence[EmbeddingVector]) -> list[list[float]]:
    """Symmetric pairwise similarity matrix with 1.0 on the diagonal."""
    n = len(embeddings)
    matrix = [[0.0] * n for _ in range(n)]

    for i in range(n):
        matrix[i][i] = 1.0
        for j in range(i + 1, n):
            similarity = cosine_similarity(embeddings[i].vector, embeddings[j].vector)
            matrix[i][j] = similarity
            matrix[j][i] = similarity

    return matrix


def calculate_centroid(vectors: Sequence[Vector]) -> list[float]:
    """Element-wise mean of the vectors."""
    if not vectors:
        return []
    return np.mean(np.asarray(vectors, dtype=np.float64), axis=0).tolist()


def calculate_average_similarity(vectors: Sequence[Vector]) -> float:
    """Mean pairwise cosine similarity (1.0 for a single vector)."""
    if len(vectors) <= 1:
        return 1.0

    total = 0.0
    count = 0
    for i in range(len(vectors)):
        for j in range(i + 1, len(vectors)):
            total += cosine_similarity(vectors[i], vectors[j])
            count += 1

    return total / count


def cluster_by_similarity(
    embeddings: Mapping[str, EmbeddingVector],
    threshold: float = 0.7,
) -> list[Cluster]:
    """Greedy threshold clustering.

    Items are visited in insertion order. Each unassigned item seeds a
    cluster, then every later unassigned item joins it when its similarity
    to the running centroid meets ``threshold``. Every id ends up in
    exactly one cluster.
    """
    clusters: list[Cluster] = []
    assigned: set[str] = set()
    items = list(embeddings.items())

    for i, (seed_id, seed) in enumerate(items):
        if seed_id in assigned:
            continue

        members = [seed_id]
        vectors: list[Vector] = [seed.vector]
        assigned.add(seed_id)
        centroid = list(seed.vector)

        for candidate_id, candidate in items[i + 1 :]:
            if candidate_id in assigned:
                continue

            if cosine_similarity(candidate.vector, centroid) >= threshold:
                members.append(candidate_id)
                vectors.append(candidate.vector)
                assigned.add(candidate_id)
                centroid = calculate_centroid(vectors)

        clusters.append(
            Cluster(
                id=len(clusters),
                members=members,
                centroid=calculate_centroid(vectors),
                avg_similarity=calculate_average_similarity(vectors),
            )
        )

    return clusters


def get_similarity_stats(scores: Sequence[float]) -> SimilarityStats:
    """Mean, median, min, max and population standard deviation.

    Empty input yields all-zero stats. The input is not modified.
    """
    if len(scores) == 0:
        return SimilarityStats()

    ordered = sorted(scores)
    n = len(ordered)
    mean = sum(ordered) / n

    if n % 2 == 0:
        median = (ordered[n // 2 - 1] + ordered[n // 2]) / 2
    else:
        median = ordered[n // 2]

    variance = sum((value - mean) ** 2 for value in ordered) / n

    return SimilarityStats(
        mean=mean,
        median=median,
        min=ordered[0],
        max=ordered[-1],
        std_dev=math.sqrt(variance),
    )
