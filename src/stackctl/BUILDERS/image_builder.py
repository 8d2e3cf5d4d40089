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
Builds images for services that declare a build context.
"""
import os
from typing import List

from ..MODELS.orchestration_config import Topology
from ..RUNTIME.base import RuntimeBackend
from ..UTILS.logging import get_logger

logger = get_logger(__name__)


class ImageBuilder:
    """
    Runs the image build step ahead of reconciliation.
    """
    def __init__(self, backend: RuntimeBackend, base_dir: str = "."):
        """
        Initializes the ImageBuilder.

        :param backend: Runtime used to build the images.
        :param base_dir: The base directory for resolving relative build contexts.
        """
        self.backend = backend
        self.base_dir = base_dir

    def build_all(self, topology: Topology, dry_run: bool = False) -> List[str]:
        """
        Builds every service image that has a build context, in declaration order.

        :param topology: The topology whose images to build.
        :param dry_run: Only report what would be built.
        :return: The image tags built (or that would be built).
        :raises RuntimeOperationError: If a build fails.
        """
        tags = []
        for svc in topology.services.values():
            if not svc.build_context:
                continue
            context = os.path.join(self.base_dir, svc.build_context)
            if dry_run:
                logger.info("would build image", service=svc.name, image=svc.image_name, context=context)
            else:
                logger.info("building image", service=svc.name, image=svc.image_name, context=context)
                self.backend.build_image(context, svc.image_name, svc.dockerfile_path)
            tags.append(svc.image_name)
        return tags
