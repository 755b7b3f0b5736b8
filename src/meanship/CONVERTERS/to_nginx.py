# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Converters for generating the frontend's nginx configuration from the
proxy routing contract.
"""
import os
from jinja2 import Template
from ..MANAGERS.proxy_router import ProxyRouter

# proxy_pass has no URI part, so nginx forwards the request path unchanged
NGINX_TEMPLATE = """\
server {
    listen {{ listen_port }};
    server_name _;

    root {{ root }};
    index {{ index }};

{% for location in api_locations %}
    location {{ location }} {
        proxy_pass {{ upstream }};
        proxy_http_version 1.1;
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
    }

{% endfor %}
    location / {
        try_files $uri $uri/ {{ index_document }};
    }
}
"""


class NginxConverter:
    """
    Renders a ProxyRouter as an nginx server block.
    """

    def __init__(self, router: ProxyRouter, listen_port: int = 80,
                 root: str = "/usr/share/nginx/html"):
        """
        :param router: Routing contract to render.
        :param listen_port: Port nginx listens on inside the container.
        :param root: Directory holding the built SPA assets.
        """
        self.router = router
        self.listen_port = listen_port
        self.root = root
        self.template = Template(NGINX_TEMPLATE, trim_blocks=True)

    def render(self) -> str:
        return self.template.render(
            listen_port=self.listen_port,
            root=self.root,
            index=os.path.basename(self.router.index_document),
            index_document=self.router.index_document,
            api_locations=[f"= {self.router.api_prefix.rstrip('/')}", self.router.api_prefix],
            upstream=self.router.upstream,
        )

    def convert(self, output_path: str = "nginx.conf") -> str:
        """
        Writes the nginx configuration.

        :param output_path: File to create.
        :return: The path written.
        """
        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(output_path, "w") as f:
            f.write(self.render())

        print(f"nginx configuration written to {output_path}")
        return output_path
