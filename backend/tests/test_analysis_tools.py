import json
from pathlib import Path

from repoinsight.analysis_tools import (
    analyze_code_quality,
    analyze_dependencies,
    analyze_structure,
    duplication_percentage,
    file_complexity,
    language_for,
)


def write(root: Path, rel: str, text: str) -> None:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text)


def test_structure_counts_and_key_files(tmp_path: Path):
    write(tmp_path, "package.json", "{}")
    write(tmp_path, "README.md", "# demo")
    write(tmp_path, "src/index.ts", "export {}")
    write(tmp_path, "src/util.py", "x = 1")
    write(tmp_path, "node_modules/dep/index.js", "ignored")
    write(tmp_path, ".github/workflows/ci.yml", "ignored")
    write(tmp_path, "dist/bundle.js", "ignored")

    s = analyze_structure(tmp_path)

    assert s.totalFiles == 4
    assert s.totalDirectories == 2  # root + src
    assert s.languages == {"JSON": 1, "Markdown": 1, "TypeScript": 1, "Python": 1}
    kinds = {k.path: k.type for k in s.keyFiles}
    assert kinds == {"package.json": "package", "README.md": "readme", "src/index.ts": "main"}
    src = next(c for c in s.root.children if c.name == "src")
    assert src.path == "src"
    assert {c.path for c in src.children} == {"src/index.ts", "src/util.py"}


def test_language_for():
    assert language_for("App.TSX") == "TypeScript"
    assert language_for("Dockerfile") == "Dockerfile"
    assert language_for("notes.xyz") == "Other"


def test_dependencies_from_manifests(tmp_path: Path):
    write(tmp_path, "package.json", json.dumps({
        "dependencies": {"react": "^18.2.0"},
        "devDependencies": {"vitest": "^1.0.0"},
        "peerDependencies": {"react-dom": "^18"},
    }))
    write(tmp_path, "requirements.txt", "# pinned\nfastapi==0.110.0\nhttpx\n\n-r extra.txt\n")
    write(tmp_path, "pom.xml", """
      <project><dependencies>
        <dependency><groupId>junit</groupId><artifactId>junit</artifactId><version>4.13</version></dependency>
        <dependency><groupId>g</groupId><artifactId>guava</artifactId></dependency>
      </dependencies></project>
    """)

    deps = {(d.name, d.version, d.type) for d in analyze_dependencies(tmp_path)}

    assert deps == {
        ("react", "^18.2.0", "production"),
        ("vitest", "^1.0.0", "development"),
        ("react-dom", "^18", "peer"),
        ("fastapi", "0.110.0", "production"),
        ("httpx", "latest", "production"),
        ("junit", "4.13", "production"),
        ("guava", "latest", "production"),
    }


def test_dependencies_tolerate_broken_manifest(tmp_path: Path):
    write(tmp_path, "package.json", "{not json")
    assert analyze_dependencies(tmp_path) == []


def test_complexity_heuristic():
    assert file_complexity("", ".py") == 1
    py = "\n".join(f"def f{i}(x):\n    return x" for i in range(10))
    # parens open and close on the same line, so nesting stays at 1
    assert file_complexity(py, ".py") == 1 + 10 // 2
    assert file_complexity("def f():\n" * 1000, ".py") == 200


def test_duplication():
    block = "result = compute_something(value)\n"
    assert duplication_percentage([block, block]) == 100
    assert duplication_percentage(["a = 1\n", "b = 2\n"]) == 0
    assert duplication_percentage([]) == 0


def test_code_quality_and_security(tmp_path: Path):
    write(tmp_path, "src/config.js", 'const password = "hunter2";\n' + "console.log(1);\n" * 6)
    write(tmp_path, "src/run.py", "def run(cmd):\n    return eval(cmd)\n")
    write(tmp_path, "docs/readme.md", "eval( not code")

    q = analyze_code_quality(tmp_path)

    assert {f.path for f in q.complexity.files} == {"src/config.js", "src/run.py"}
    assert q.complexity.max >= 1
    types = {(i.type, i.file) for i in q.securityIssues}
    assert ("hardcoded_secret", "src/config.js") in types
    assert ("debug_code", "src/config.js") in types
    assert ("unsafe_eval", "src/run.py") in types
    assert 0 <= q.maintainability <= 100
