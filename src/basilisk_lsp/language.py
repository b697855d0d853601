"""Basilisk C vocabulary: keyword tables, hover documentation and completion items.

Basilisk C extends C99 with grid iterators (``foreach`` and friends), field
types declared with ``[]``, and ``event`` blocks scheduled by the ``run()``
loop. Everything here is static data; no source is parsed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache

from lsprotocol.types import (
    CompletionItem,
    CompletionItemKind,
    InsertTextFormat,
    MarkupContent,
    MarkupKind,
)

CONTROL_KEYWORDS: tuple[str, ...] = (
    "event",
    "foreach",
    "foreach_face",
    "foreach_boundary",
    "foreach_vertex",
    "foreach_dimension",
    "foreach_level",
    "foreach_leaf",
    "foreach_neighbor",
    "foreach_cell",
    "foreach_child",
    "foreach_block",
    "foreach_blockf",
    "foreach_block_inner",
    "foreach_point",
    "foreach_cache",
    "foreach_cache_level",
    "foreach_stencil",
    "reduction",
)

FIELD_TYPES: tuple[str, ...] = (
    "scalar",
    "vector",
    "tensor",
    "face",
    "vertex",
    "symmetric",
    "coord",
    "point",
)

GRID_TYPES: tuple[str, ...] = ("Grid", "Boundary", "Tree", "Quadtree", "Octree", "Point", "Cell")

BUILTIN_FUNCTIONS: tuple[str, ...] = (
    # simulation control
    "run",
    "init_grid",
    "free_grid",
    "cartesian",
    "quadtree",
    "octree",
    "multigrid",
    # fields
    "new",
    "delete",
    "normalize",
    "statsf",
    "normf",
    "change",
    # solvers
    "diffusion",
    "poisson",
    "project",
    "advection",
    "viscosity",
    "mg_solve",
    # adaptation
    "adapt_wavelet",
    "refine",
    "unrefine",
    "coarsen",
    # output
    "output_ppm",
    "output_gfs",
    "output_vtu",
    "output_field",
    "output_facets",
    "dump",
    "restore",
    # math
    "noise",
    "interpolate",
    "pid",
    "npe",
    "clamp",
    "fabs",
    "sq",
    "cube",
    "sign",
    "max",
    "min",
    # boundary conditions
    "dirichlet",
    "neumann",
    "periodic",
    "symmetry",
    # geometry
    "fraction",
    "curvature",
    "height",
    "facet_normal",
    "embed_gradient",
    # parallel
    "mpi_all_reduce",
    "mpi_boundary_update",
)

CONSTANTS: tuple[str, ...] = (
    "PI",
    "M_PI",
    "HUGE",
    "nodata",
    "true",
    "false",
    "NULL",
    "BGHOSTS",
    "GHOSTS",
    "TRASH",
    "N",
    "L0",
    "X0",
    "Y0",
    "Z0",
    "DT",
    "TOLERANCE",
    "NITERMAX",
    "NITERMIN",
)

LOOP_VARIABLES: tuple[str, ...] = (
    "x",
    "y",
    "z",
    "Delta",
    "level",
    "depth",
    "t",
    "dt",
    "i",
    "point",
    "child",
    "neighbor",
    "left",
    "right",
    "top",
    "bottom",
    "front",
    "back",
    "fm",
    "cm",
    "cs",
)

BOUNDARY_DIRECTIONS: tuple[str, ...] = ("left", "right", "top", "bottom", "front", "back")

MPI_KEYWORDS: tuple[str, ...] = (
    "MPI_Allreduce",
    "MPI_Barrier",
    "MPI_Bcast",
    "MPI_Comm",
    "MPI_Comm_rank",
    "MPI_Comm_size",
    "MPI_Finalize",
    "MPI_Gather",
    "MPI_Init",
    "MPI_Recv",
    "MPI_Reduce",
    "MPI_Scatter",
    "MPI_Send",
    "MPI_DOUBLE",
    "MPI_INT",
    "MPI_FLOAT",
    "MPI_COMM_WORLD",
    "MPI_SUM",
    "MPI_MAX",
    "MPI_MIN",
)

COMMON_HEADERS: tuple[str, ...] = (
    "run.h",
    "utils.h",
    "events.h",
    "common.h",
    "grid/cartesian.h",
    "grid/quadtree.h",
    "grid/octree.h",
    "grid/multigrid.h",
    "grid/multigrid-mpi.h",
    "grid/tree.h",
    "grid/bitree.h",
    "poisson.h",
    "diffusion.h",
    "navier-stokes/centered.h",
    "navier-stokes/perfs.h",
    "two-phase.h",
    "vof.h",
    "tension.h",
    "reduced.h",
    "tracer.h",
    "embed.h",
    "curvature.h",
    "fractions.h",
    "conservation.h",
    "view.h",
    "output.h",
    "draw.h",
)


@dataclass(frozen=True)
class KeywordDoc:
    signature: str
    description: str
    example: str = ""
    see_also: tuple[str, ...] = ()


DOCUMENTATION: dict[str, KeywordDoc] = {
    "foreach": KeywordDoc(
        signature="foreach() { ... }",
        description="Loops over every cell of the grid. The main way to read and write field values.",
        example="foreach()\n  f[] = x*x + y*y;",
        see_also=("foreach_face", "foreach_vertex", "foreach_boundary"),
    ),
    "foreach_face": KeywordDoc(
        signature="foreach_face([x|y|z]) { ... }",
        description="Loops over cell faces, optionally restricted to one direction.",
        example="face vector uf[];\nforeach_face(x)\n  uf.x[] = 1.;",
        see_also=("foreach", "face"),
    ),
    "foreach_vertex": KeywordDoc(
        signature="foreach_vertex() { ... }",
        description="Loops over grid vertices (cell corners).",
        see_also=("foreach", "vertex"),
    ),
    "foreach_boundary": KeywordDoc(
        signature="foreach_boundary(direction) { ... }",
        description="Loops over the boundary cells on one side of the domain.",
        see_also=("foreach",),
    ),
    "foreach_dimension": KeywordDoc(
        signature="foreach_dimension() { ... }",
        description="Repeats the block once per spatial dimension, permuting x, y and z.",
    ),
    "foreach_neighbor": KeywordDoc(
        signature="foreach_neighbor([size]) { ... }",
        description="Loops over the stencil around the current cell. Only valid inside foreach.",
    ),
    "foreach_level": KeywordDoc(
        signature="foreach_level(level) { ... }",
        description="Loops over the cells of one refinement level of a tree grid.",
    ),
    "foreach_leaf": KeywordDoc(
        signature="foreach_leaf() { ... }",
        description="Loops over the leaf cells of a tree grid.",
    ),
    "foreach_cell": KeywordDoc(
        signature="foreach_cell() { ... }",
        description="Depth-first traversal of a tree grid, including parent cells.",
    ),
    "foreach_child": KeywordDoc(
        signature="foreach_child() { ... }",
        description="Loops over the children of the current cell inside foreach_cell.",
    ),
    "event": KeywordDoc(
        signature="event name (condition) { ... }",
        description=(
            "Declares a block that run() executes whenever its condition holds, "
            "such as i++, t += 0.1 or t = end."
        ),
        example="event logfile (i++)\n  fprintf (stderr, \"%d %g\\n\", i, t);",
        see_also=("run",),
    ),
    "reduction": KeywordDoc(
        signature="reduction(op:var)",
        description="Combines a variable across a parallel foreach with +, *, min or max.",
        example="double total = 0.;\nforeach(reduction(+:total))\n  total += f[]*dv();",
    ),
    "scalar": KeywordDoc(
        signature="scalar name[];",
        description="Declares a cell-centered scalar field, indexed with [].",
        example="scalar f[];\nforeach()\n  f[] = 0.;",
        see_also=("vector", "tensor"),
    ),
    "vector": KeywordDoc(
        signature="vector name[];",
        description="Declares a cell-centered vector field with components name.x, name.y, name.z.",
        example="vector u[];\nforeach()\n  u.x[] = 1.;",
        see_also=("scalar", "face"),
    ),
    "tensor": KeywordDoc(
        signature="tensor name[];",
        description="Declares a tensor field with components such as name.x.y.",
    ),
    "face": KeywordDoc(
        signature="face vector name[];",
        description="Qualifies a vector field as stored on cell faces.",
        see_also=("foreach_face",),
    ),
    "vertex": KeywordDoc(
        signature="vertex scalar name[];",
        description="Qualifies a scalar field as stored on cell corners.",
        see_also=("foreach_vertex",),
    ),
    "coord": KeywordDoc(
        signature="coord name;",
        description="Plain struct with x, y and z members; not a field.",
    ),
    "run": KeywordDoc(
        signature="run()",
        description="Runs the time loop, executing events until none remain.",
        see_also=("event",),
    ),
    "init_grid": KeywordDoc(
        signature="init_grid(int n)",
        description="Allocates the grid with n cells per direction.",
    ),
    "adapt_wavelet": KeywordDoc(
        signature="adapt_wavelet({fields}, (double[]){tolerances}, maxlevel[, minlevel])",
        description="Refines and coarsens a tree grid from wavelet error estimates of the given fields.",
        example="adapt_wavelet ({f, u}, (double[]){1e-3, 1e-2, 1e-2}, 8);",
    ),
    "diffusion": KeywordDoc(
        signature="diffusion(scalar f, double dt, face vector D)",
        description="Advances df/dt = div(D grad f) by one implicit time step.",
    ),
    "poisson": KeywordDoc(
        signature="poisson(scalar a, scalar b, face vector alpha, scalar lambda)",
        description="Solves div(alpha grad a) + lambda a = b with the multigrid solver.",
    ),
    "output_ppm": KeywordDoc(
        signature="output_ppm(scalar f, FILE *fp[, options])",
        description="Writes a scalar field as a PPM image.",
    ),
    "dump": KeywordDoc(
        signature="dump([file = \"dump\"])",
        description="Writes a full snapshot of the simulation for restarts.",
        see_also=("restore",),
    ),
    "restore": KeywordDoc(
        signature="restore([file = \"dump\"])",
        description="Reloads a snapshot written by dump().",
        see_also=("dump",),
    ),
    "dirichlet": KeywordDoc(
        signature="f[side] = dirichlet(value)",
        description="Fixed-value boundary condition.",
    ),
    "neumann": KeywordDoc(
        signature="f[side] = neumann(value)",
        description="Fixed-gradient boundary condition.",
    ),
    "fraction": KeywordDoc(
        signature="fraction(scalar c, expression)",
        description="Initializes volume fractions from an implicit surface.",
    ),
    "interpolate": KeywordDoc(
        signature="interpolate(scalar f, double x, double y[, double z])",
        description="Interpolates field f at an arbitrary point.",
    ),
    "statsf": KeywordDoc(
        signature="statsf(scalar f)",
        description="Returns min, max, sum and volume of a field.",
    ),
    "normf": KeywordDoc(
        signature="normf(scalar f)",
        description="Returns the average, rms and max norms of a field.",
    ),
    "Delta": KeywordDoc(signature="Delta", description="Size of the current cell."),
    "level": KeywordDoc(signature="level", description="Refinement level of the current cell."),
    "t": KeywordDoc(signature="t", description="Current simulation time."),
    "dt": KeywordDoc(signature="dt", description="Current time step."),
    "i": KeywordDoc(signature="i", description="Current iteration number."),
    "N": KeywordDoc(signature="N", description="Initial number of cells per direction."),
    "L0": KeywordDoc(signature="L0", description="Domain length; the box spans X0 to X0 + L0."),
    "pid": KeywordDoc(signature="pid()", description="MPI rank of this process, 0 without MPI."),
    "npe": KeywordDoc(signature="npe()", description="Number of MPI processes, 1 without MPI."),
}

_CATEGORIES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("control", CONTROL_KEYWORDS),
    ("type", FIELD_TYPES),
    ("type", GRID_TYPES),
    ("function", BUILTIN_FUNCTIONS),
    ("constant", CONSTANTS),
    ("variable", LOOP_VARIABLES),
    ("mpi", MPI_KEYWORDS),
)


def hover_documentation(word: str) -> str | None:
    doc = DOCUMENTATION.get(word)
    if doc is None:
        return None
    markdown = f"**{doc.signature}**\n\n{doc.description}"
    if doc.example:
        markdown += f"\n\n**Example:**\n```c\n{doc.example}\n```"
    if doc.see_also:
        markdown += f"\n\n**See also:** {', '.join(doc.see_also)}"
    return markdown


def keyword_category(word: str) -> str | None:
    for category, words in _CATEGORIES:
        if word in words:
            return category
    return None


def is_basilisk_keyword(word: str) -> bool:
    return keyword_category(word) is not None


def _markdown(value: str) -> MarkupContent:
    return MarkupContent(kind=MarkupKind.Markdown, value=value)


def _snippet(label: str, kind: CompletionItemKind, detail: str, insert_text: str, doc: str) -> CompletionItem:
    return CompletionItem(
        label=label,
        kind=kind,
        detail=detail,
        documentation=_markdown(doc),
        insert_text=insert_text,
        insert_text_format=InsertTextFormat.Snippet,
    )


def _description(word: str, fallback: str) -> str:
    doc = DOCUMENTATION.get(word)
    return doc.description if doc is not None else fallback


_ITERATORS: tuple[tuple[str, str, str], ...] = (
    ("foreach", "Basilisk iteration", "foreach() {\n\t$0\n}"),
    ("foreach_face", "Face iteration", "foreach_face(${1:x}) {\n\t$0\n}"),
    ("foreach_vertex", "Vertex iteration", "foreach_vertex() {\n\t$0\n}"),
    (
        "foreach_boundary",
        "Boundary iteration",
        "foreach_boundary(${1|left,right,top,bottom,front,back|}) {\n\t$0\n}",
    ),
    ("foreach_dimension", "Dimension loop", "foreach_dimension() {\n\t$0\n}"),
    ("foreach_neighbor", "Neighbor iteration", "foreach_neighbor(${1:1}) {\n\t$0\n}"),
    ("foreach_level", "Level iteration", "foreach_level(${1:level}) {\n\t$0\n}"),
    ("foreach_leaf", "Leaf iteration", "foreach_leaf() {\n\t$0\n}"),
    ("foreach_cell", "Cell iteration", "foreach_cell() {\n\t$0\n}"),
    ("foreach_child", "Child iteration", "foreach_child() {\n\t$0\n}"),
)

_EVENT_TEMPLATES: tuple[tuple[str, str, str, str], ...] = (
    ("event init", "Initialization event", "event init (i = 0) {\n\t$0\n}", "Runs once at i = 0."),
    (
        "event logfile",
        "Logging event",
        'event logfile (i++) {\n\tfprintf(stderr, "i = %d, t = %g\\n", i, t);\n\t$0\n}',
        "Runs every iteration.",
    ),
    (
        "event adapt",
        "Adaptation event",
        "event adapt (i++) {\n\tadapt_wavelet({${1:f}}, (double[]){${2:1e-3}}, ${3:8});\n}",
        "Adapts the mesh every iteration.",
    ),
    (
        "event movies",
        "Output event",
        'event movies (t += ${1:0.1}; t <= ${2:10}) {\n\toutput_ppm(${3:f}, fopen("${4:field}.ppm", "w"));\n}',
        "Periodic image output.",
    ),
    ("event end", "End condition", "event end (t = ${1:10}) {\n\t$0\n}", "Stops the simulation."),
)

_FIELD_TEMPLATES: tuple[tuple[str, str, str, str], ...] = (
    ("scalar", "Scalar field", "scalar ${1:f}[];", "scalar"),
    ("vector", "Vector field", "vector ${1:u}[];", "vector"),
    ("tensor", "Tensor field", "tensor ${1:T}[];", "tensor"),
    ("face vector", "Face-centered vector", "face vector ${1:uf}[];", "face"),
    ("vertex scalar", "Vertex-centered scalar", "vertex scalar ${1:psi}[];", "vertex"),
    ("coord", "Coordinate struct", "coord ${1:p} = {${2:0}, ${3:0}, ${4:0}};", "coord"),
)

_MISC_TEMPLATES: tuple[tuple[str, str, str, str], ...] = (
    ("main", "Main function template", "int main() {\n\tinit_grid(${1:64});\n\trun();\n}", "Minimal Basilisk main."),
    (
        "main_mpi",
        "MPI main function",
        "int main(int argc, char *argv[]) {\n\tMPI_Init(&argc, &argv);\n\tinit_grid(${1:64});\n\trun();\n\tMPI_Finalize();\n\treturn 0;\n}",
        "Main with MPI setup and teardown.",
    ),
    (
        "boundary_dirichlet",
        "Dirichlet BC",
        "${1:f}[${2|left,right,top,bottom,front,back|}] = dirichlet(${3:0});",
        "Fixed-value boundary condition.",
    ),
    (
        "boundary_neumann",
        "Neumann BC",
        "${1:f}[${2|left,right,top,bottom,front,back|}] = neumann(${3:0});",
        "Fixed-gradient boundary condition.",
    ),
)


@lru_cache(maxsize=1)
def _completion_table() -> tuple[CompletionItem, ...]:
    items: list[CompletionItem] = []
    for label, detail, insert_text in _ITERATORS:
        items.append(_snippet(label, CompletionItemKind.Keyword, detail, insert_text, _description(label, detail)))
    items.append(
        _snippet(
            "event",
            CompletionItemKind.Keyword,
            "Event handler",
            "event ${1:name} (${2|i = 0,t = 0,i++,t++,t += 0.1|}) {\n\t$0\n}",
            _description("event", "Define an event handler"),
        )
    )
    for label, detail, insert_text, doc in _EVENT_TEMPLATES:
        items.append(_snippet(label, CompletionItemKind.Snippet, detail, insert_text, doc))
    for label, detail, insert_text, doc_key in _FIELD_TEMPLATES:
        items.append(
            _snippet(label, CompletionItemKind.TypeParameter, detail, insert_text, _description(doc_key, detail))
        )
    for name in BUILTIN_FUNCTIONS:
        doc = DOCUMENTATION.get(name)
        items.append(
            CompletionItem(
                label=name,
                kind=CompletionItemKind.Function,
                detail="Basilisk function",
                documentation=None if doc is None else _markdown(hover_documentation(name) or doc.description),
            )
        )
    for name, kind, detail in (
        *((constant, CompletionItemKind.Constant, "Basilisk constant") for constant in CONSTANTS),
        *((variable, CompletionItemKind.Variable, "Loop variable") for variable in LOOP_VARIABLES),
    ):
        doc = DOCUMENTATION.get(name)
        items.append(
            CompletionItem(
                label=name,
                kind=kind,
                detail=detail,
                documentation=None if doc is None else _markdown(doc.description),
            )
        )
    for header in COMMON_HEADERS:
        items.append(
            CompletionItem(
                label=header,
                kind=CompletionItemKind.File,
                detail="Basilisk header",
                insert_text=f'#include "{header}"',
                insert_text_format=InsertTextFormat.PlainText,
            )
        )
    for label, detail, insert_text, doc in _MISC_TEMPLATES:
        items.append(_snippet(label, CompletionItemKind.Snippet, detail, insert_text, doc))
    items.append(
        _snippet(
            "reduction",
            CompletionItemKind.Keyword,
            "Parallel reduction",
            "reduction(${1|+,*,min,max|}:${2:var})",
            _description("reduction", "Parallel reduction operator"),
        )
    )
    return tuple(items)


def completion_items() -> list[CompletionItem]:
    return list(_completion_table())


def component_completions() -> list[CompletionItem]:
    return [
        CompletionItem(label="x", kind=CompletionItemKind.Field, detail="X component"),
        CompletionItem(label="y", kind=CompletionItemKind.Field, detail="Y component"),
        CompletionItem(label="z", kind=CompletionItemKind.Field, detail="Z component (3D)"),
    ]


_INCLUDE_PREFIX_RE = re.compile(r"#include\s*[\"<]")
_MEMBER_PREFIX_RE = re.compile(r"\w+\.$")


def contextual_completion_items(line_prefix: str) -> list[CompletionItem]:
    """Completion items for the text left of the cursor on its line."""
    if _INCLUDE_PREFIX_RE.search(line_prefix):
        return [item for item in _completion_table() if item.label.endswith(".h") or "/" in item.label]
    if _MEMBER_PREFIX_RE.search(line_prefix):
        return component_completions()
    return completion_items()
