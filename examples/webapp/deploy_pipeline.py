# deploy_pipeline.py
# The same build/test/deploy flow written with the Python helpers.
from __future__ import annotations

from relayci import download, job, publish, sh, ssh_copy, ssh_run, stage
from relayci import pipeline as define

PIPELINE = define(
    "webapp",
    stage(
        "Build",
        job(
            "build",
            sh("Install", "npm install"),
            sh("Build", "npm run build"),
            publish("drop", "build"),
            requires=["npm"],
        ),
    ),
    stage(
        "Test",
        job("test", sh("Unit tests", "npm test -- --watchAll=false"), requires=["npm"]),
    ),
    stage(
        "Deploy",
        job(
            "deploy",
            download("drop"),
            ssh_copy("deploy-vm", "$(Pipeline.Workspace)/drop", "/var/www/html", clean_target=True),
            ssh_run("deploy-vm", "sudo systemctl restart nginx"),
        ),
        condition="and(succeeded(), eq(variables['Build.SourceBranchName'], 'main'))",
    ),
    trigger=["main"],
)
