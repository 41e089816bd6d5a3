import wsgiref.util

import pytest

from pugbicchiere import Kernel

VIEWS = {
    "app/templates/p.pug": "div\n  p\n",
    "app/templates/token.pug": "p= app.user\n",
    "app/templates/custom-helper.pug": "if view.custom\n  u= view.custom.foo()\nelse\n  s Noop\n",
    "app/templates/logout.pug": "a(href=logout_path()) Logout\n",
    "app/templates/asset.pug": 'p= asset("img/logo.png")\n',
    "app/templates/route.pug": 'p= path("hello", {"name": "world"})\n',
    "app/templates/literal.pug": 'p= "asset(1)"\n',
    "app/templates/random.pug": "p= random(1, 1)\n",
    "app/templates/csrf.pug": 'p= csrf_token("form")\n',
    "app/templates/granted.pug": 'p= is_granted("ROLE_USER")\n',
    "src/TestBundle/templates/bundle.pug": "p= text\n",
    "src/TestBundle/templates/directory/file.pug": "section World\n",
}


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    for relative, content in VIEWS.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    # bundle without views, sorted before TestBundle
    (root / "src" / "AOtherBundle").mkdir()
    (root / "src" / "README.txt").write_text("not a bundle")
    return root


@pytest.fixture
def kernel(project):
    kernel = Kernel(project, environment="test", debug=False)
    router = kernel.get_container().get("router")
    router.add("hello", "/hello/<name>")
    router.add("logout", "/logout")
    return kernel


@pytest.fixture
def make_environ():
    def factory(path="/", **extra):
        environ = {"PATH_INFO": path, "HTTP_HOST": "example.com"}
        environ.update(extra)
        wsgiref.util.setup_testing_defaults(environ)
        return environ
    return factory
