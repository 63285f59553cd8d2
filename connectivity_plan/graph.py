# Copyright 2023, Chariot Solutions
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


""" The dependency graph of construction steps, and the code that orders and
    executes them.

    Steps never read each other's objects directly. A step that needs a value
    produced by another step holds a ReferenceToken for it; the token becomes
    readable only when the producing step has completed. Every token that a
    step holds is also a dependency of that step.

    Execution hands each step to a provisioning engine as a ResourceIntent,
    with all tokens replaced by their values. The engine is any object with an
    `apply(intent)` method that creates or updates the resource idempotently and
    returns a dict of outputs (identities, URLs, states).
    """

import heapq

from collections import defaultdict
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait

from loguru import logger

from .core import ResourceIntent, STEP_KINDS
from .errors import CyclicDependency, InvalidTopology, ProvisioningFailed, TopologyError, UnresolvedReference


DEFAULT_MAX_WORKERS = 4

_KIND_RANK = {kind: rank for rank, kind in enumerate(STEP_KINDS)}


class ReferenceToken:
    """ A read-only handle on one output of a step. If `key` is given the token
        refers to a single entry of a dict-valued output.
        """

    def __init__(self, step_id, output, key=None):
        self.step_id = step_id
        self.output = output
        self.key = key
        self.region = None
        self.account = None
        self._resolved = False
        self._value = None

    @property
    def name(self):
        return self.output if self.key is None else f"{self.output}[{self.key}]"

    @property
    def resolved(self):
        return self._resolved

    def resolve(self):
        if not self._resolved:
            raise UnresolvedReference(self.step_id, self.name)
        return self._value

    def crosses_boundary(self, region, account):
        """ True if the producing step runs in a different region or account than
            the given one.
            """
        return (self.region, self.account) != (region, account)

    def as_dict(self):
        return {"ref": self.step_id, "output": self.name}

    def _fulfil(self, outputs):
        if self.output not in outputs:
            return
        value = outputs[self.output]
        if self.key is not None:
            if self.key not in value:
                return
            value = value[self.key]
        self._value = value
        self._resolved = True

    def __repr__(self):
        return f"ReferenceToken({self.step_id}.{self.name})"


class Step:
    """ One node of the graph. `prepare` may rewrite the resolved attributes just
        before the intent is handed to the engine; `on_complete` is told about the
        outputs, and may return extra outputs to publish.
        """

    def __init__(self, step_id, kind, region, account, attributes, depends_on, prepare=None, on_complete=None):
        self.step_id = step_id
        self.kind = kind
        self.region = region
        self.account = account
        self.attributes = attributes
        self.depends_on = frozenset(depends_on)
        self.prepare = prepare
        self.on_complete = on_complete

    def intent(self, attributes):
        return ResourceIntent(self.step_id, self.kind, self.region, self.account, attributes, tuple(sorted(self.depends_on)))

    def __repr__(self):
        return f"Step({self.step_id})"


class ExecutionReport:
    """ Outcome of executing a graph: outputs of the completed steps, the error
        for each failed step, and the steps skipped because something upstream
        failed.
        """

    def __init__(self):
        self.outputs = {}
        self.failures = {}
        self.skipped = []

    @property
    def succeeded(self):
        return not self.failures and not self.skipped


class TopologyGraph:

    def __init__(self):
        self._steps = {}
        self._tokens = {}
        self._outputs = {}

    def add_step(self, step_id, kind, region, account, attributes=None, depends_on=(), prepare=None, on_complete=None):
        if step_id in self._steps:
            raise InvalidTopology(f"step already declared: {step_id}")
        if kind not in _KIND_RANK:
            raise InvalidTopology(f"unknown step kind: {kind}")
        attributes = attributes or {}
        dependencies = set(depends_on) | {token.step_id for token in _tokens_in(attributes)}
        step = Step(step_id, kind, region, account, attributes, dependencies, prepare, on_complete)
        self._steps[step_id] = step
        for token in self._tokens.values():
            if token.step_id == step_id:
                token.region, token.account = region, account
        return step

    def reference(self, step_id, output, key=None):
        """ Returns the token for a step's output. The step doesn't have to be
            declared yet, but must be by the time the graph is ordered.
            """
        token = self._tokens.get((step_id, output, key))
        if token is None:
            token = ReferenceToken(step_id, output, key)
            producer = self._steps.get(step_id)
            if producer:
                token.region, token.account = producer.region, producer.account
            self._tokens[(step_id, output, key)] = token
        return token

    def step(self, step_id):
        try:
            return self._steps[step_id]
        except KeyError:
            raise InvalidTopology(f"unknown step: {step_id}") from None

    def order(self):
        """ Returns the steps in an order where each one follows everything it
            depends on. Ties are broken by step kind, then by declaration order,
            so the same graph always produces the same order.
            """
        position = {}
        remaining = {}
        dependents = defaultdict(list)
        for index, step in enumerate(self._steps.values()):
            position[step.step_id] = (_KIND_RANK[step.kind], index)
            remaining[step.step_id] = len(step.depends_on)
            for dep in step.depends_on:
                if dep not in self._steps:
                    raise InvalidTopology(f"step {step.step_id} depends on undeclared step {dep}")
                dependents[dep].append(step.step_id)

        ready = [(position[step_id], step_id) for step_id, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        result = []
        while ready:
            _, step_id = heapq.heappop(ready)
            result.append(self._steps[step_id])
            for dependent in dependents[step_id]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (position[dependent], dependent))

        if len(result) != len(self._steps):
            placed = {step.step_id for step in result}
            raise CyclicDependency(sorted(step_id for step_id in self._steps if step_id not in placed))
        return result

    def plan(self):
        """ The ordered list of resource intents, with references rendered as
            {"ref": step, "output": name} placeholders.
            """
        return [step.intent(render(step.attributes)) for step in self.order()]

    def cross_boundary_references(self):
        """ Lists (consuming step, token) for every token whose producer runs in
            another region or account.
            """
        result = []
        for step in self._steps.values():
            for token in _tokens_in(step.attributes):
                if token.crosses_boundary(step.region, step.account):
                    result.append((step.step_id, token))
        return result

    def complete(self, step_id, outputs):
        """ Records the outputs of a finished step, and makes its tokens readable.
            """
        step = self.step(step_id)
        outputs = dict(outputs or {})
        if step.on_complete:
            extra = step.on_complete(outputs)
            if extra:
                outputs.update(extra)
        self._outputs[step_id] = outputs
        for token in self._tokens.values():
            if token.step_id == step_id:
                token._fulfil(outputs)
        return outputs

    def is_complete(self, step_id):
        return step_id in self._outputs

    def resolved_intent(self, step_id):
        step = self.step(step_id)
        attributes = _resolve(step.attributes)
        if step.prepare:
            attributes = step.prepare(attributes)
        return step.intent(attributes)

    def execute(self, engine, completed=None, max_workers=DEFAULT_MAX_WORKERS):
        """ Runs every step through the engine. Independent branches run
            concurrently; a step starts only once all of its dependencies have
            completed. A failure stops everything downstream of the failed step,
            but unrelated branches carry on.

            `completed` maps step IDs to the outputs of a previous, partial run;
            those steps are not sent to the engine again.
            """
        order = self.order()
        report = ExecutionReport()
        completed = {step_id: outputs for step_id, outputs in (completed or {}).items() if step_id in self._steps}
        waiting = [step for step in order if step.step_id not in completed]
        for step_id, outputs in completed.items():
            try:
                report.outputs[step_id] = self.complete(step_id, outputs)
            except TopologyError as ex:
                self._fail(self._steps[step_id], ex, waiting, report)
                continue
            logger.debug(f"{step_id} was already provisioned")

        running = {}
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            self._submit_ready(pool, engine, waiting, running, report)
            while running:
                finished, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in finished:
                    step = running.pop(future)
                    try:
                        report.outputs[step.step_id] = self.complete(step.step_id, future.result())
                    except TopologyError as ex:
                        self._fail(step, ex, waiting, report)
                    else:
                        logger.info(f"{step.step_id} provisioned")
                self._submit_ready(pool, engine, waiting, running, report)
        return report

    def __contains__(self, step_id):
        return step_id in self._steps

    def __len__(self):
        return len(self._steps)

    ##
    ## Internals
    ##

    def _submit_ready(self, pool, engine, waiting, running, report):
        for step in list(waiting):
            if step not in waiting:
                continue
            if not all(dep in report.outputs for dep in step.depends_on):
                continue
            waiting.remove(step)
            try:
                intent = self.resolved_intent(step.step_id)
            except TopologyError as ex:
                self._fail(step, ex, waiting, report)
                continue
            logger.debug(f"scheduling {step.step_id}")
            running[pool.submit(_apply, engine, intent)] = step

    def _fail(self, step, error, waiting, report):
        logger.error(f"{step.step_id} failed: {error}")
        report.failures[step.step_id] = error
        blocked = {step.step_id}
        for candidate in list(waiting):
            if candidate.depends_on & blocked:
                blocked.add(candidate.step_id)
                waiting.remove(candidate)
                report.skipped.append(candidate.step_id)
                logger.warning(f"skipping {candidate.step_id}: depends on failed step {step.step_id}")


def _apply(engine, intent):
    try:
        return engine.apply(intent) or {}
    except Exception as ex:
        raise ProvisioningFailed(intent.intent_id, ex) from ex


def _tokens_in(value):
    if isinstance(value, ReferenceToken):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _tokens_in(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _tokens_in(item)


def _resolve(value):
    if isinstance(value, ReferenceToken):
        return value.resolve()
    elif isinstance(value, dict):
        return {k: _resolve(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_resolve(v) for v in value]
    return value


def render(value):
    """ Replaces tokens with serializable placeholders.
        """
    if isinstance(value, ReferenceToken):
        return value.as_dict()
    elif isinstance(value, dict):
        return {k: render(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [render(v) for v in value]
    return value
