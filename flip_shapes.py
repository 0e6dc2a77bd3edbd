import abc

import numpy as np


class Shape(abc.ABC):
    """
    Inside/outside test used to decide where particles are emitted.

    `contains` accepts scalars or numpy arrays of equal shape and returns a bool
    (or a boolean array).
    """

    @abc.abstractmethod
    def contains(self, x, y):
        raise NotImplementedError

    def __invert__(self):
        return Inverted(self)

    def __or__(self, other):
        return Union(self, other)


class Circle(Shape):

    def __init__(self, center, radius):
        if radius <= 0:
            raise ValueError(f"radius must be positive, got {radius}")
        self.center = (float(center[0]), float(center[1]))
        self.radius = float(radius)

    def contains(self, x, y):
        return np.hypot(x - self.center[0], y - self.center[1]) < self.radius

    def __repr__(self):
        return f"Circle(center={self.center}, radius={self.radius})"


class Box(Shape):
    """Axis-aligned rectangle, lower bound inclusive and upper bound exclusive."""

    def __init__(self, lower_left, upper_right):
        if upper_right[0] <= lower_left[0] or upper_right[1] <= lower_left[1]:
            raise ValueError(f"empty box {lower_left} - {upper_right}")
        self.lower_left = (float(lower_left[0]), float(lower_left[1]))
        self.upper_right = (float(upper_right[0]), float(upper_right[1]))

    def contains(self, x, y):
        return ((x >= self.lower_left[0]) & (x < self.upper_right[0]) &
                (y >= self.lower_left[1]) & (y < self.upper_right[1]))

    def __repr__(self):
        return f"Box(lower_left={self.lower_left}, upper_right={self.upper_right})"


class Polygon(Shape):
    """Simple polygon tested with the even-odd rule (horizontal ray crossing)."""

    def __init__(self, vertices):
        vertices = np.asarray(vertices, dtype=np.float64)
        if vertices.ndim != 2 or vertices.shape[1] != 2 or len(vertices) < 3:
            raise ValueError("a polygon needs at least three (x, y) vertices")
        self.vertices = vertices

    def contains(self, x, y):
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        inside = np.zeros(np.broadcast(x, y).shape, dtype=bool)

        xs = self.vertices[:, 0]
        ys = self.vertices[:, 1]
        for k in range(len(self.vertices)):
            x0, y0 = xs[k - 1], ys[k - 1]
            x1, y1 = xs[k], ys[k]
            # Edge straddles the ray's height (horizontal edges never do)
            straddles = (y0 > y) != (y1 > y)
            if y1 != y0:
                crossing_x = x0 + (y - y0) * (x1 - x0) / (y1 - y0)
                inside ^= straddles & (x < crossing_x)

        if inside.ndim == 0:
            return bool(inside)
        return inside

    def __repr__(self):
        return f"Polygon({len(self.vertices)} vertices)"


class Inverted(Shape):
    """Everything outside `shape`."""

    def __init__(self, shape):
        self.shape = shape

    def contains(self, x, y):
        return np.logical_not(self.shape.contains(x, y))


class Union(Shape):

    def __init__(self, *shapes):
        if not shapes:
            raise ValueError("Union needs at least one shape")
        self.shapes = shapes

    def contains(self, x, y):
        inside = self.shapes[0].contains(x, y)
        for shape in self.shapes[1:]:
            inside = np.logical_or(inside, shape.contains(x, y))
        return inside
