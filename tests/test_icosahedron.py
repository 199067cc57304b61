import numpy as np
import pytest

from sift3d.Geometry.icosahedron import (
    ICOS_NFACES, ICOS_NVERT, BARY_EPS, cart2bary,
)


class TestMesh:
    """Structure of the icosahedral mesh"""

    def test_vertex_and_face_counts(self, mesh):
        assert mesh.vertices.shape == (ICOS_NVERT, 3)
        assert mesh.face_indices.shape == (ICOS_NFACES, 3)
        assert mesh.face_vertices.shape == (ICOS_NFACES, 3, 3)

    def test_vertices_are_unit_length(self, mesh):
        assert np.allclose(np.linalg.norm(mesh.vertices, axis=1), 1.0)

    def test_face_normals_point_outward(self, mesh):
        for v0, v1, v2 in mesh.face_vertices:
            normal = np.cross(v2 - v1, v1 - v0)
            assert np.dot(normal, v0) > 0

    def test_all_edges_have_equal_length(self, mesh):
        lengths = []
        for v0, v1, v2 in mesh.face_vertices:
            lengths += [np.linalg.norm(v1 - v0), np.linalg.norm(v2 - v1), np.linalg.norm(v0 - v2)]
        assert np.ptp(lengths) < 1e-9

    def test_each_vertex_is_shared_by_five_faces(self, mesh):
        counts = np.bincount(mesh.face_indices.ravel(), minlength=ICOS_NVERT)
        assert np.all(counts == 5)

    def test_face_vertices_match_indices(self, mesh):
        assert np.allclose(mesh.face_vertices, mesh.vertices[mesh.face_indices])


class TestBinning:
    """Barycentric binning of direction vectors"""

    def test_zero_vector_has_no_bin(self, mesh):
        assert mesh.bin_for_vector(np.zeros(3)) is None

    def test_random_vectors_reconstruct_direction(self, mesh):
        rng = np.random.default_rng(1)
        for v in rng.normal(size=(200, 3)):
            face, bary = mesh.bin_for_vector(v)
            assert np.all(bary >= -BARY_EPS)
            assert np.isclose(bary.sum(), 1.0)

            # bary . V is parallel to v
            point = bary @ mesh.face_vertices[face]
            assert np.allclose(point / np.linalg.norm(point), v / np.linalg.norm(v), atol=1e-9)

    def test_vertex_direction_lands_on_that_vertex(self, mesh):
        for i, vertex in enumerate(mesh.vertices):
            face, bary = mesh.bin_for_vector(3.0 * vertex)
            j = int(np.argmax(bary))
            assert mesh.face_indices[face, j] == i
            assert bary[j] == pytest.approx(1.0, abs=1e-6)

    def test_batch_matches_single(self, mesh):
        rng = np.random.default_rng(2)
        vectors = rng.normal(size=(100, 3))
        vectors[7] = 0.0

        faces, barys = mesh.bin_vectors(vectors)

        assert faces[7] == -1
        assert np.all(barys[7] == 0)
        for i, v in enumerate(vectors):
            if i == 7:
                continue
            face, bary = mesh.bin_for_vector(v)
            assert faces[i] == face
            assert np.allclose(barys[i], bary)


class TestCart2Bary:
    """Ray / triangle intersection"""

    def test_round_trip(self, mesh):
        triangle = mesh.face_vertices[0]
        target = np.array([0.2, 0.3, 0.5]) @ triangle
        bary, k = cart2bary(2.0 * target, triangle)
        assert np.allclose(bary, [0.2, 0.3, 0.5])
        assert np.allclose(bary @ triangle, k * 2.0 * target)

    def test_parallel_ray_is_rejected(self, mesh):
        triangle = mesh.face_vertices[3]
        edge = triangle[1] - triangle[0]
        assert cart2bary(edge, triangle) is None
