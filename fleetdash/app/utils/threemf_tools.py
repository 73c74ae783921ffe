"""3MF mesh extraction utilities.

A 3MF file is a zip package. The root model part (located through
``_rels/.rels``) lists build items; each item references an object that is
either a mesh or a set of components, and components may live in other model
parts (the production extension used by slicers). This module flattens all of
that into a single vertex/face array pair with every transform applied.
"""

import io
import logging
import posixpath
import zipfile

import defusedxml.ElementTree as ET
import numpy as np
from defusedxml import DefusedXmlException

from fleetdash.app.core.exceptions import ParseError

logger = logging.getLogger(__name__)

DEFAULT_MODEL_PATH = "3D/3dmodel.model"
START_PART_TYPE = "http://schemas.microsoft.com/3dmanufacturing/2013/01/3dmodel"

# Guards against component cycles
MAX_COMPONENT_DEPTH = 16

IDENTITY = np.array([[1, 0, 0], [0, 1, 0], [0, 0, 1], [0, 0, 0]], dtype=float)


def _local(tag: str) -> str:
    """Strip the XML namespace from a tag or attribute name."""
    return tag.rsplit("}", 1)[-1]


def _attr(element, name: str) -> str | None:
    for key, value in element.attrib.items():
        if _local(key) == name:
            return value
    return None


def _children(element, name: str):
    return [child for child in element if _local(child.tag) == name]


def _descendants(element, name: str):
    return [child for child in element.iter() if _local(child.tag) == name]


def parse_transform(value: str | None) -> np.ndarray:
    """Parse a 3MF transform attribute into a 4x3 row-vector matrix.

    The attribute holds 12 numbers ``m00 m01 m02 m10 ... m32``; a point
    transforms as ``p @ M[:3] + M[3]``.
    """
    if not value:
        return IDENTITY
    try:
        numbers = [float(n) for n in value.split()]
    except ValueError as e:
        raise ParseError(f"Invalid 3MF transform: {value!r}") from e
    if len(numbers) != 12:
        raise ParseError(f"3MF transform needs 12 values, got {len(numbers)}")
    return np.array(numbers, dtype=float).reshape(4, 3)


def compose(inner: np.ndarray, outer: np.ndarray) -> np.ndarray:
    """Combine two transforms so that ``inner`` applies first."""
    linear = inner[:3] @ outer[:3]
    translation = inner[3] @ outer[:3] + outer[3]
    return np.vstack([linear, translation])


def apply_transform(vertices: np.ndarray, transform: np.ndarray) -> np.ndarray:
    return vertices @ transform[:3] + transform[3]


def find_root_model_path(zf: zipfile.ZipFile) -> str:
    """Locate the root model part from the package relationships."""
    try:
        rels = zf.read("_rels/.rels")
    except KeyError:
        return DEFAULT_MODEL_PATH
    try:
        root = ET.fromstring(rels)
    except (ET.ParseError, DefusedXmlException):
        logger.debug("Unreadable 3MF relationships part, using default model path")
        return DEFAULT_MODEL_PATH
    for rel in _descendants(root, "Relationship"):
        if rel.get("Type") == START_PART_TYPE and rel.get("Target"):
            return rel.get("Target").lstrip("/")
    return DEFAULT_MODEL_PATH


class _Package:
    """Lazily parsed model parts of one 3MF package."""

    def __init__(self, zf: zipfile.ZipFile):
        self.zf = zf
        self._parts: dict[str, dict] = {}

    def part(self, path: str) -> dict:
        path = posixpath.normpath(path.lstrip("/"))
        if path not in self._parts:
            self._parts[path] = self._parse_part(path)
        return self._parts[path]

    def _parse_part(self, path: str) -> dict:
        try:
            content = self.zf.read(path)
        except KeyError as e:
            raise ParseError(f"3MF model part not found: {path}") from e
        try:
            root = ET.fromstring(content)
        except (ET.ParseError, DefusedXmlException) as e:
            raise ParseError(f"Invalid XML in 3MF part {path}: {e}") from e

        objects = {}
        for obj in _descendants(root, "object"):
            object_id = obj.get("id")
            if object_id is None:
                continue
            meshes = _children(obj, "mesh")
            if meshes:
                objects[object_id] = ("mesh", self._read_mesh(meshes[0]))
                continue
            components = []
            for group in _children(obj, "components"):
                for component in _children(group, "component"):
                    components.append(
                        (
                            component.get("objectid"),
                            _attr(component, "path"),
                            parse_transform(component.get("transform")),
                        )
                    )
            objects[object_id] = ("components", components)

        items = []
        for build in _children(root, "build"):
            for item in _children(build, "item"):
                items.append((item.get("objectid"), _attr(item, "path"), parse_transform(item.get("transform"))))

        return {"objects": objects, "items": items}

    @staticmethod
    def _read_mesh(mesh) -> tuple[np.ndarray, np.ndarray]:
        vertices = []
        for group in _children(mesh, "vertices"):
            for vertex in _children(group, "vertex"):
                vertices.append((float(vertex.get("x", 0)), float(vertex.get("y", 0)), float(vertex.get("z", 0))))
        count = len(vertices)

        faces = []
        for group in _children(mesh, "triangles"):
            for triangle in _children(group, "triangle"):
                try:
                    face = (int(triangle.get("v1")), int(triangle.get("v2")), int(triangle.get("v3")))
                except (TypeError, ValueError):
                    continue
                # Skip triangles pointing outside the vertex list
                if all(0 <= index < count for index in face):
                    faces.append(face)

        return (
            np.array(vertices, dtype=float).reshape(-1, 3),
            np.array(faces, dtype=np.int64).reshape(-1, 3),
        )

    def collect(
        self,
        part_path: str,
        object_id: str | None,
        transform: np.ndarray,
        out: list[tuple[np.ndarray, np.ndarray]],
        depth: int = 0,
    ):
        """Append the transformed meshes of one object (recursively) to ``out``."""
        if depth > MAX_COMPONENT_DEPTH:
            raise ParseError("3MF component nesting too deep")
        entry = self.part(part_path)["objects"].get(object_id)
        if entry is None:
            logger.debug("3MF object %s not found in %s", object_id, part_path)
            return
        kind, payload = entry
        if kind == "mesh":
            vertices, faces = payload
            if len(vertices) and len(faces):
                out.append((apply_transform(vertices, transform), faces))
            return
        for child_id, child_path, child_transform in payload:
            self.collect(child_path or part_path, child_id, compose(child_transform, transform), out, depth + 1)


def extract_mesh_from_3mf(data: bytes) -> tuple[np.ndarray, np.ndarray]:
    """Return ``(vertices, faces)`` for every build item of a 3MF package.

    Raises:
        ParseError: If the package is not a valid zip/3MF or contains no geometry
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(data), "r")
    except zipfile.BadZipFile as e:
        raise ParseError(f"Not a 3MF package: {e}") from e

    with zf:
        package = _Package(zf)
        root_path = find_root_model_path(zf)
        root = package.part(root_path)

        meshes: list[tuple[np.ndarray, np.ndarray]] = []
        if root["items"]:
            for object_id, path, transform in root["items"]:
                package.collect(path or root_path, object_id, transform, meshes)
        else:
            # No build section: show every mesh object as-is
            for object_id in root["objects"]:
                package.collect(root_path, object_id, IDENTITY, meshes)

    if not meshes:
        raise ParseError("3MF package contains no mesh geometry")

    vertices_list = []
    faces_list = []
    offset = 0
    for vertices, faces in meshes:
        vertices_list.append(vertices)
        faces_list.append(faces + offset)
        offset += len(vertices)
    return np.vstack(vertices_list), np.vstack(faces_list)
