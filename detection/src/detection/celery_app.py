# Copyright (c) 2026 John Earle
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
MailGuard Detection — Celery Application Configuration

All detection workers import this app instance. Broker, serialisation and
reliability settings come from mailguard_shared.celery_defaults.
"""
from celery import Celery

from mailguard_shared.celery_defaults import CELERY_DEFAULTS

app = Celery("detection")

app.config_from_object({
    **CELERY_DEFAULTS,

    # Detection tasks consume the "emails" queue; verdicts leave on "verdicts"
    "task_routes": {
        "detection.tasks.analyze_email": {"queue": "emails"},
        "detection.tasks.record_lookalike_feedback": {"queue": "emails"},
    },
})

app.autodiscover_tasks(["detection"])
