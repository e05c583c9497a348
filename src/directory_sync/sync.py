"""
One synchronization pass and the retry loop around it.

A pass walks a fixed sequence of steps; each step records its problems in its
own stairval notepad, named after the step. An error in any step other than
the biobank pull ends the pass.
"""

import enum
import logging
import time
import typing

from stairval.notepad import create_notepad

from .aggregation import create_fact_tables
from .config import SyncConfig
from .diagnosis import DiagnosisCorrector, build_diagnosis_map
from .registry import RegistryClient
from .source import SourceClient, collect_diagnoses, populate_input_dataset, summarize_collections

logger = logging.getLogger(__name__)


class SyncStep(enum.Enum):
    INIT_RESOURCES = "init resources"
    DIAGNOSIS_CORRECTION = "diagnosis correction"
    STAR_MODEL_UPDATE = "star model update"
    COLLECTION_UPDATE = "collection update"
    BIOBANK_PULL = "biobank pull"
    DONE = "done"


# steps whose failure does not fail the pass
BEST_EFFORT_STEPS = {SyncStep.BIOBANK_PULL}


class Synchronizer:
    """Runs sync passes from a source store into a registry."""

    def __init__(self, source: SourceClient, registry: RegistryClient, config: SyncConfig):
        self.source = source
        self.registry = registry
        self.config = config
        self.corrections: dict[str, typing.Optional[str]] = {}
        self.step_notepads: dict = {}
        self.step = SyncStep.INIT_RESOURCES

    def steps(self) -> list[SyncStep]:
        steps = [SyncStep.INIT_RESOURCES, SyncStep.DIAGNOSIS_CORRECTION]
        if self.config.allow_star_model:
            steps.append(SyncStep.STAR_MODEL_UPDATE)
        if self.config.import_collections:
            steps.append(SyncStep.COLLECTION_UPDATE)
        if self.config.import_biobanks:
            steps.append(SyncStep.BIOBANK_PULL)
        return steps

    def run_pass(self) -> bool:
        """Run every step in order. Returns False as soon as a required step fails."""
        self.corrections = {}
        self.step_notepads = {}
        handlers = {
            SyncStep.INIT_RESOURCES: self._init_resources,
            SyncStep.DIAGNOSIS_CORRECTION: self._correct_diagnoses,
            SyncStep.STAR_MODEL_UPDATE: self._update_star_model,
            SyncStep.COLLECTION_UPDATE: self._update_collections,
            SyncStep.BIOBANK_PULL: self._pull_biobanks,
        }
        for step in self.steps():
            self.step = step
            logger.info(f"Sync step: {step.value}")
            notepad = create_notepad(step.name)
            self.step_notepads[step] = notepad
            try:
                handlers[step](notepad)
            except Exception as e:
                notepad.add_error(f"{type(e).__name__}: {e}")
            if notepad.has_errors():
                first_error = next(iter(notepad.errors()))
                message = getattr(first_error, "message", first_error)
                if step in BEST_EFFORT_STEPS:
                    logger.warning(f"Sync step {step.value} failed, continuing: {message}")
                    continue
                logger.error(f"Sync step {step.value} failed: {message}")
                return False
        self.step = SyncStep.DONE
        logger.info("Sync pass completed")
        return True

    def _relogin(self, notepad) -> bool:
        if not self.registry.login():
            notepad.add_error("Could not log in to the registry")
            return False
        return True

    def _init_resources(self, notepad) -> None:
        if not self.source.init_resources():
            notepad.add_error("Could not initialize the source store")

    def _correct_diagnoses(self, notepad) -> None:
        if not self._relogin(notepad):
            return
        raw_codes = collect_diagnoses(self.source, self.config.default_collection_id)
        if raw_codes is None:
            notepad.add_error("Could not read diagnoses from the source store")
            return
        corrector = DiagnosisCorrector(self.registry)
        self.corrections = corrector.correct(build_diagnosis_map(raw_codes))
        dropped = sorted(code for code, corrected in self.corrections.items() if corrected is None)
        if dropped:
            notepad.add_warning(f"{len(dropped)} diagnoses are not known to the registry: {dropped[:10]}")

    def _update_star_model(self, notepad) -> None:
        if not self._relogin(notepad):
            return
        dataset = populate_input_dataset(
            self.source,
            self.config.default_collection_id,
            min_donors=self.config.min_donors,
        )
        if dataset is None:
            notepad.add_error("Could not build the star model input")
            return
        dataset.apply_diagnosis_corrections(self.corrections)
        fact_table = create_fact_tables(dataset, self.config.max_facts)
        if len(fact_table) == 0:
            notepad.add_warning("The star model is empty, nothing to submit")
            return
        fact_table.sanity_check(
            dataset.row_count,
            (row.sample_material for cid in dataset.collection_ids for row in dataset.rows(cid)),
        )
        if not self.registry.update_star_model(fact_table):
            notepad.add_error("Could not update the star model in the registry")

    def _update_collections(self, notepad) -> None:
        if not self._relogin(notepad):
            return
        collections = summarize_collections(self.source, self.config.default_collection_id)
        if collections is None:
            notepad.add_error("Could not summarize collections from the source store")
            return
        if len(collections) == 0:
            notepad.add_warning("No collections to update")
            return
        collections.apply_diagnosis_corrections(self.corrections)
        if not self.registry.update_collections(collections):
            notepad.add_error("Could not update collections in the registry")

    def _pull_biobanks(self, notepad) -> None:
        if not self._relogin(notepad):
            return
        biobanks = self.source.list_biobanks()
        if biobanks is None:
            notepad.add_error("Could not list biobanks in the source store")
            return
        for biobank in biobanks:
            registry_biobank = self.registry.fetch_biobank(biobank.id)
            if registry_biobank is None:
                notepad.add_warning(f"Biobank {biobank.id!r} not found in the registry")
                continue
            biobank.update_from(registry_biobank)
            if not self.source.update_biobank(biobank):
                notepad.add_error(f"Could not update biobank {biobank.id!r} in the source store")


def sync_with_failover(
    run_pass: typing.Callable[[], bool],
    retry_max: int,
    retry_interval: float,
    sleep: typing.Callable[[float], None] = time.sleep,
) -> bool:
    """
    Run ``run_pass`` until it succeeds, at most ``retry_max`` times.

    Waits ``retry_interval`` seconds between attempts. An exception escaping a
    pass counts as a failed attempt.
    """
    for attempt in range(1, retry_max + 1):
        try:
            if run_pass():
                return True
        except Exception as e:
            logger.error(f"Sync attempt {attempt} raised: {e}")
        logger.warning(f"Sync attempt {attempt} of {retry_max} failed")
        if attempt < retry_max:
            sleep(retry_interval)
    logger.error(f"Sync failed after {retry_max} attempts")
    return False
