"""Tests for builtin blocks running through the execution runtime."""

import socket
from datetime import timedelta

import pytest

from blockflow.api.deps import create_access_token
from blockflow.blocks.actions.http import BlockedDestinationError, check_resolved_host
from blockflow.core.query_builder import SafeQueryBuilder
from blockflow.models.execution import ExecutionStatus


def result_of(outcome, index: int = 0) -> dict:
    return outcome.results[index].result


class TestValidationScenarios:
    """Blocks report misconfiguration as failed results, never exceptions."""

    async def test_summarize_checks_file_before_api_key(self, run_graph):
        outcome = await run_graph(
            [{"id": "n1", "label": "ai.summarize", "config": {"fileVariable": "uploadedFile"}}]
        )
        result = result_of(outcome)
        assert result["success"] is False
        assert "File variable" in result["error"]
        assert result["errorCode"] == "CONFIGURATION_ERROR"

    async def test_upload_rejects_disallowed_type(self, run_graph):
        outcome = await run_graph(
            [
                {
                    "id": "n1",
                    "label": "file.upload",
                    "config": {"fileUploadElementId": "fileInput", "allowedFileTypes": "application/pdf"},
                }
            ],
            context={
                "uploadedFiles": {
                    "fileInput": {"fileName": "photo.png", "mimeType": "image/png", "size": 2048}
                }
            },
        )
        result = result_of(outcome)
        assert result["success"] is False
        assert "not allowed" in result["error"]

    async def test_download_from_missing_context_key(self, run_graph):
        outcome = await run_graph(
            [
                {
                    "id": "n1",
                    "label": "file.download",
                    "config": {"downloadSourceType": "context", "downloadContextKey": "missing"},
                }
            ]
        )
        result = result_of(outcome)
        assert result["success"] is False
        assert "No file found" in result["error"]

    async def test_auth_verify_role_mismatch(self, run_graph, test_user):
        token = create_access_token(test_user.id, role="developer")
        outcome = await run_graph(
            [{"id": "n1", "label": "auth.verify", "config": {"requiredRole": "admin"}}],
            context={"token": token},
        )
        result = result_of(outcome)
        assert result["success"] is False
        assert result["isAuthenticated"] is True
        assert result["isAuthorized"] is False
        assert result["error"] == "INSUFFICIENT_PERMISSIONS"
        assert result["errorCode"] == 403
        assert outcome.context["isAuthorized"] is False

    async def test_auth_verify_passes(self, run_graph, test_user):
        token = create_access_token(test_user.id, role="admin")
        outcome = await run_graph(
            [{"id": "n1", "label": "auth.verify", "config": {"requiredRole": "admin"}}],
            context={"headers": {"authorization": f"Bearer {token}"}},
        )
        assert result_of(outcome)["success"] is True
        assert outcome.context["user"]["id"] == test_user.id
        assert outcome.context["session"]["roles"] == ["admin"]

    @pytest.mark.parametrize(
        "context, reason",
        [
            ({}, "UNAUTHORIZED"),
            ({"token": "not-a-jwt"}, "INVALID_TOKEN"),
        ],
    )
    async def test_auth_verify_without_valid_token(self, run_graph, context, reason):
        outcome = await run_graph([{"id": "n1", "label": "auth.verify", "config": {}}], context=context)
        result = result_of(outcome)
        assert result["error"] == reason
        assert result["errorCode"] == 401

    async def test_auth_verify_expired_token(self, run_graph, test_user):
        token = create_access_token(test_user.id, expires_delta=timedelta(minutes=-5))
        outcome = await run_graph(
            [{"id": "n1", "label": "auth.verify", "config": {}}],
            context={"token": token},
        )
        assert result_of(outcome)["error"] == "TOKEN_EXPIRED"


class TestTriggersAndConditions:
    """Tests for trigger blocks and branching conditions."""

    async def test_form_submission_flows_into_match(self, run_graph):
        nodes = [
            {"id": "t", "label": "onSubmit", "config": {"selectedFormGroup": "signup"}},
            {
                "id": "m",
                "label": "match",
                "config": {
                    "leftValue": "{{age}}",
                    "rightValue": "18",
                    "comparisonType": "number",
                    "operator": "at_least",
                },
            },
            {"id": "ok", "label": "notify.toast", "config": {"message": "Welcome {{name}}"}},
            {"id": "no", "label": "page.redirect", "config": {"url": "https://example.com/too-young"}},
        ]
        edges = [
            {"source": "t", "target": "m"},
            {"source": "m", "target": "ok", "sourceHandle": "yes"},
            {"source": "m", "target": "no", "sourceHandle": "no"},
        ]

        outcome = await run_graph(nodes, edges, context={"formData": {"name": "Ada", "age": "36"}})

        assert [r.node_id for r in outcome.results] == ["t", "m", "ok"]
        assert result_of(outcome, 1)["matches"] is True
        assert result_of(outcome, 2)["toast"]["message"] == "Welcome Ada"
        assert outcome.context["formSubmission"]["formGroupId"] == "signup"

    async def test_submit_without_form_data_fails(self, run_graph):
        outcome = await run_graph([{"id": "t", "label": "onSubmit", "config": {"selectedFormGroup": "g"}}])
        assert result_of(outcome)["error"] == "No form data provided"

    async def test_switch_follows_case_label(self, run_graph):
        nodes = [
            {
                "id": "s",
                "label": "switch",
                "config": {
                    "inputValue": "{{plan}}",
                    "cases": [
                        {"caseValue": "free", "caseLabel": "free"},
                        {"caseValue": "PRO", "caseLabel": "pro"},
                    ],
                },
            },
            {"id": "free", "label": "notify.toast", "config": {"message": "free"}},
            {"id": "pro", "label": "notify.toast", "config": {"message": "pro"}},
            {"id": "other", "label": "notify.toast", "config": {"message": "other"}},
        ]
        edges = [
            {"source": "s", "target": "free", "sourceHandle": "free"},
            {"source": "s", "target": "pro", "sourceHandle": "pro"},
            {"source": "s", "target": "other", "sourceHandle": "default"},
        ]

        outcome = await run_graph(nodes, edges, context={"plan": "pro"})
        assert [r.node_id for r in outcome.results] == ["s", "pro"]
        assert outcome.context["switchResult"]["matchedCase"] == "pro"

        outcome = await run_graph(nodes, edges, context={"plan": "enterprise"})
        assert [r.node_id for r in outcome.results] == ["s", "other"]

    @pytest.mark.parametrize(
        "mode, form, expected",
        [
            ("all", {"name": "Ada", "email": ""}, False),
            ("any", {"name": "Ada", "email": ""}, True),
            ("all", {"name": "Ada", "email": "ada@example.com"}, True),
        ],
    )
    async def test_is_filled(self, run_graph, mode, form, expected):
        outcome = await run_graph(
            [
                {
                    "id": "f",
                    "label": "isFilled",
                    "config": {"selectedElementIds": ["name", "email"], "mode": mode},
                }
            ],
            context={"formData": form},
        )
        assert result_of(outcome)["isFilled"] is expected

    async def test_role_is(self, run_graph):
        outcome = await run_graph(
            [{"id": "r", "label": "roleIs", "config": {"requiredRole": "Admin"}}],
            context={"user": {"role": "admin"}},
        )
        assert result_of(outcome)["isValid"] is True

    async def test_date_valid(self, run_graph):
        outcome = await run_graph(
            [
                {
                    "id": "d",
                    "label": "dateValid",
                    "config": {
                        "selectedElementIds": ["start"],
                        "validationRules": {"minDate": "2024-01-01"},
                    },
                }
            ],
            context={"formData": {"start": "2023-06-01"}},
        )
        result = result_of(outcome)
        assert result["isValid"] is False
        assert result["validationResults"][0]["errors"] == ["Date must be on or after 2024-01-01"]


class TestDatabaseBlocks:
    """Tests for the dynamic-table blocks."""

    async def test_create_provisions_table_and_publishes(self, run_graph, test_app, publisher):
        outcome = await run_graph(
            [{"id": "c", "label": "db.create", "config": {"tableName": "contacts"}}],
            context={"formData": {"name": "Ada", "email": "ada@example.com"}},
        )

        result = result_of(outcome)
        table = f"app_{test_app.id}_contacts"
        assert result["success"] is True
        assert result["tableCreated"] is True
        assert result["tableName"] == table
        assert result["insertedId"] == 1
        assert result["record"]["email"] == "ada@example.com"

        events = [(channel, event) for channel, event, _ in publisher.events]
        assert events == [(f"app:{test_app.id}", "table-created"), (f"app:{test_app.id}", "data-updated")]

    async def test_create_adds_missing_columns(self, run_graph, test_app, table_store):
        await run_graph(
            [{"id": "c", "label": "db.create", "config": {"tableName": "contacts", "insertData": {"name": "Ada"}}}]
        )
        outcome = await run_graph(
            [
                {
                    "id": "c",
                    "label": "db.create",
                    "config": {"tableName": "contacts", "insertData": {"name": "Grace", "city": "Arlington"}},
                }
            ]
        )

        assert result_of(outcome)["tableCreated"] is False
        assert result_of(outcome)["record"]["city"] == "Arlington"
        columns = [c["name"] for c in await table_store.get_columns(f"app_{test_app.id}_contacts")]
        assert "city" in columns

    async def test_create_then_find_then_update(self, run_graph, test_app, publisher):
        await run_graph(
            [
                {
                    "id": "c",
                    "label": "db.create",
                    "config": {"tableName": "tickets", "insertData": {"title": "Printer", "status": "open"}},
                }
            ]
        )
        nodes = [
            {
                "id": "find",
                "label": "db.find",
                "config": {
                    "tableName": "tickets",
                    "conditions": [{"field": "status", "operator": "=", "value": "open"}],
                    "orderBy": [{"field": "id", "direction": "desc"}],
                    "limit": 10,
                },
            },
            {
                "id": "close",
                "label": "db.update",
                "config": {
                    "tableName": "tickets",
                    "updateData": {"status": "closed"},
                    "whereConditions": [{"field": "id", "operator": "=", "value": "{{dbFindResult.0.id}}"}],
                },
            },
        ]
        outcome = await run_graph(nodes, [{"source": "find", "target": "close"}])

        found, updated = result_of(outcome, 0), result_of(outcome, 1)
        assert found["count"] == 1
        assert found["hasMore"] is False
        assert outcome.context["dbFindCount"] == 1
        assert updated["success"] is True
        assert updated["updatedCount"] == 1
        assert updated["data"][0]["status"] == "closed"

    async def test_find_reports_total_across_pages(self, run_graph, publisher):
        creates = [
            {
                "id": f"c{n}",
                "label": "db.create",
                "config": {"tableName": "notes", "insertData": {"body": f"note {n}"}},
            }
            for n in range(3)
        ]
        await run_graph(creates, [{"source": "c0", "target": "c1"}, {"source": "c1", "target": "c2"}])

        def find(offset: int) -> dict:
            return {
                "id": "find",
                "label": "db.find",
                "config": {"tableName": "notes", "limit": 2, "offset": offset},
            }

        first_page = result_of(await run_graph([find(0)]))
        last_page = result_of(await run_graph([find(2)]))

        assert (first_page["count"], first_page["total"], first_page["hasMore"]) == (2, 3, True)
        assert (last_page["count"], last_page["total"], last_page["hasMore"]) == (1, 3, False)
        assert publisher.events[-1][1] == "database:update"

    async def test_update_matching_nothing_succeeds(self, run_graph, table_store, test_app):
        await table_store.create_table(f"app_{test_app.id}_tickets", test_app.id, ["status"])
        outcome = await run_graph(
            [
                {
                    "id": "u",
                    "label": "db.update",
                    "config": {
                        "tableName": "tickets",
                        "updateData": '{"status": "closed"}',
                        "whereConditions": '[{"field": "id", "operator": "=", "value": 999}]',
                    },
                }
            ]
        )
        result = result_of(outcome)
        assert result["success"] is True
        assert result["updatedCount"] == 0

    async def test_update_requires_where(self, run_graph):
        outcome = await run_graph(
            [{"id": "u", "label": "db.update", "config": {"tableName": "tickets", "updateData": {"status": "x"}}}]
        )
        assert result_of(outcome)["error"] == "WHERE conditions required (safety)"

    async def test_upsert_inserts_then_updates(self, run_graph, table_store, test_app):
        await table_store.create_table(f"app_{test_app.id}_members", test_app.id, ["email", "name"])
        node = {
            "id": "u",
            "label": "db.upsert",
            "config": {
                "tableName": "members",
                "uniqueFields": "email",
                "insertData": {"email": "ada@example.com", "name": "Ada"},
            },
        }
        first = await run_graph([node])
        assert result_of(first)["action"] == "inserted"

        node["config"]["updateData"] = {"name": "Ada Lovelace"}
        second = await run_graph([node])
        assert result_of(second)["action"] == "updated"
        assert result_of(second)["record"]["name"] == "Ada Lovelace"

        count = SafeQueryBuilder(test_app.id).build_count_query(f"app_{test_app.id}_members")
        assert await table_store.fetch_value(count) == 1

    async def test_injection_in_values_rejected(self, run_graph, table_store, test_app):
        outcome = await run_graph(
            [
                {
                    "id": "c",
                    "label": "db.create",
                    "config": {"tableName": "contacts", "insertData": {"name": "x'; DROP TABLE users; --"}},
                }
            ]
        )
        result = result_of(outcome)
        assert result["success"] is False
        assert result["errorCode"] == "SQL_INJECTION_PATTERN"
        assert not await table_store.table_exists(f"app_{test_app.id}_contacts")

    async def test_injection_in_conditions_rejected(self, run_graph, table_store, test_app):
        await table_store.create_table(f"app_{test_app.id}_contacts", test_app.id, ["name"])
        outcome = await run_graph(
            [
                {
                    "id": "f",
                    "label": "db.find",
                    "config": {
                        "tableName": "contacts",
                        "conditions": [{"field": "name", "operator": "=", "value": "a' OR '1'='1"}],
                    },
                }
            ]
        )
        assert result_of(outcome)["errorCode"] == "SQL_INJECTION_PATTERN"

    async def test_other_apps_table_rejected(self, run_graph, test_app):
        other = f"app_{test_app.id + 1}_contacts"
        outcome = await run_graph([{"id": "f", "label": "db.find", "config": {"tableName": other}}])
        result = result_of(outcome)
        assert result["success"] is False
        assert result["errorCode"] == "INVALID_IDENTIFIER"

    async def test_missing_table_reported(self, run_graph):
        outcome = await run_graph([{"id": "f", "label": "db.find", "config": {"tableName": "ghosts"}}])
        assert result_of(outcome)["success"] is False
        assert "ghosts" in result_of(outcome)["error"]

    async def test_non_owner_denied(self, run_graph, other_user, table_store, test_app):
        outcome = await run_graph(
            [{"id": "c", "label": "db.create", "config": {"insertData": {"name": "Eve"}}}],
            user_id=other_user.id,
        )
        result = result_of(outcome)
        assert result["success"] is False
        assert result["errorCode"] == "APP_ACCESS_DENIED"
        assert not await table_store.table_exists(f"app_{test_app.id}_form_data")

    async def test_rate_limit_applies_per_operation(self, runtime, run_graph, test_app, table_store):
        await table_store.create_table(f"app_{test_app.id}_contacts", test_app.id, ["name"])
        runtime.security._rate_limits["db.find"] = 1
        node = {"id": "f", "label": "db.find", "config": {"tableName": "contacts"}}

        assert result_of(await run_graph([node]))["success"] is True
        result = result_of(await run_graph([node]))
        assert result["errorCode"] == "RATE_LIMIT_EXCEEDED"

    async def test_transactional_run_rolls_back_on_failure(self, run_graph, table_store, test_app):
        table = f"app_{test_app.id}_orders"
        await table_store.create_table(table, test_app.id, ["item"])
        nodes = [
            {"id": "c", "label": "db.create", "config": {"tableName": "orders", "insertData": {"item": "tea"}}},
            {"id": "boom", "label": "notify.toast", "config": {"message": ""}},
        ]
        outcome = await run_graph(nodes, [{"source": "c", "target": "boom"}], transactional=True)

        assert outcome.status == ExecutionStatus.COMPLETED
        assert result_of(outcome, 0)["success"] is True
        assert result_of(outcome, 1)["success"] is False
        count = SafeQueryBuilder(test_app.id).build_count_query(table)
        assert await table_store.fetch_value(count) == 0

    async def test_transactional_run_commits_on_success(self, run_graph, table_store, test_app):
        table = f"app_{test_app.id}_orders"
        await table_store.create_table(table, test_app.id, ["item"])
        outcome = await run_graph(
            [{"id": "c", "label": "db.create", "config": {"tableName": "orders", "insertData": {"item": "tea"}}}],
            transactional=True,
        )
        assert outcome.all_succeeded
        count = SafeQueryBuilder(test_app.id).build_count_query(table)
        assert await table_store.fetch_value(count) == 1


class TestIntegrationBlocks:
    """Tests for HTTP, email, AI and file blocks."""

    async def test_http_request_saves_response(self, run_graph):
        outcome = await run_graph(
            [
                {
                    "id": "h",
                    "label": "http.request",
                    "config": {
                        "url": "https://api.example.com/login",
                        "method": "POST",
                        "bodyType": "json",
                        "body": {"user": "ada"},
                        "saveResponseTo": "loginResponse",
                    },
                }
            ]
        )
        assert result_of(outcome)["statusCode"] == 200
        saved = outcome.context["loginResponse"]
        assert saved["data"] == {"method": "POST", "path": "/login", "token": "remote-token"}

    async def test_http_error_status_is_failure(self, run_graph):
        outcome = await run_graph(
            [{"id": "h", "label": "http.request", "config": {"url": "https://api.example.com/fail"}}]
        )
        result = result_of(outcome)
        assert result["success"] is False
        assert result["errorCode"] == "HTTP_ERROR"
        assert outcome.context["httpResponse"]["statusCode"] == 500

    async def test_http_timeout_classified(self, run_graph):
        outcome = await run_graph(
            [{"id": "h", "label": "http.request", "config": {"url": "https://api.example.com/slow"}}]
        )
        assert result_of(outcome)["errorCode"] == "TIMEOUT"
        assert outcome.context["httpResponse"]["error"] == "TIMEOUT"

    @pytest.mark.parametrize(
        "url",
        ["http://localhost:8000/admin", "http://10.0.0.5/", "https://example.com:5432/", "ftp://example.com/"],
    )
    async def test_http_internal_destinations_blocked(self, run_graph, url):
        outcome = await run_graph([{"id": "h", "label": "http.request", "config": {"url": url}}])
        result = result_of(outcome)
        assert result["success"] is False
        assert result["errorCode"] == "CONFIGURATION_ERROR"

    async def test_http_redirect_to_metadata_host_blocked(self, run_graph):
        outcome = await run_graph(
            [
                {
                    "id": "h",
                    "label": "http.request",
                    "config": {"url": "https://api.example.com/moved", "saveResponseTo": "fetched"},
                }
            ]
        )

        result = result_of(outcome)
        assert result["success"] is False
        assert result["errorCode"] == "CONFIGURATION_ERROR"
        assert "iam-credentials" not in str(outcome.context.to_dict())

    async def test_host_resolving_to_private_address_blocked(self, monkeypatch):
        def fake_getaddrinfo(*args, **kwargs):
            return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("10.1.2.3", 0))]

        monkeypatch.setattr(socket, "getaddrinfo", fake_getaddrinfo)

        with pytest.raises(BlockedDestinationError):
            await check_resolved_host("internal.example.com")

    async def test_host_resolving_to_public_address_allowed(self, monkeypatch):
        def fake_getaddrinfo(*args, **kwargs):
            return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("93.184.216.34", 0))]

        monkeypatch.setattr(socket, "getaddrinfo", fake_getaddrinfo)

        await check_resolved_host("example.com")

    async def test_email_send(self, run_graph, email_sender):
        outcome = await run_graph(
            [
                {
                    "id": "e",
                    "label": "email.send",
                    "config": {
                        "emailTo": "{{formData.email}}, ops@example.com",
                        "emailSubject": "Welcome",
                        "emailBody": "<p>Hello {{formData.name}}</p>",
                    },
                }
            ],
            context={"formData": {"name": "Ada", "email": "ada@example.com"}},
        )
        assert result_of(outcome)["success"] is True
        assert email_sender.sent[0]["to"] == ["ada@example.com", "ops@example.com"]
        assert email_sender.sent[0]["body"] == "<p>Hello Ada</p>"
        assert outcome.context["emailSendResult"]["messageId"] == "<message-1@test>"

    async def test_email_invalid_recipient(self, run_graph, email_sender):
        outcome = await run_graph(
            [
                {
                    "id": "e",
                    "label": "email.send",
                    "config": {"emailTo": "not-an-address", "emailSubject": "s", "emailBody": "b"},
                }
            ]
        )
        assert "Invalid email address" in result_of(outcome)["error"]
        assert email_sender.sent == []

    async def test_summarize_inline_text(self, run_graph, summarizer):
        outcome = await run_graph(
            [{"id": "a", "label": "ai.summarize", "config": {"fileVariable": "report", "apiKey": "key-1"}}],
            context={"report": {"fileName": "report.txt", "text": "Quarterly revenue grew."}},
        )
        assert result_of(outcome)["success"] is True
        assert outcome.context["aiSummary"] == "A short summary."
        assert outcome.context["aiSummaryMetadata"]["fileName"] == "report.txt"
        assert summarizer.calls == [("Quarterly revenue grew.", "key-1")]

    async def test_summarize_stored_upload(self, run_graph, summarizer, upload_dir):
        (upload_dir / "notes.txt").write_text("Meeting notes body")
        outcome = await run_graph(
            [{"id": "a", "label": "ai.summarize", "config": {"fileVariable": "notes", "apiKey": "k"}}],
            context={"uploadedFiles": {"notes": {"fileName": "notes.txt", "mimeType": "text/plain"}}},
        )
        assert result_of(outcome)["success"] is True
        assert summarizer.calls[0][0] == "Meeting notes body"

    async def test_summarize_ignores_records_sharing_the_id(self, run_graph, summarizer):
        outcome = await run_graph(
            [{"id": "a", "label": "ai.summarize", "config": {"fileVariable": "report", "apiKey": "k"}}],
            context={"customer": {"id": "report", "name": "Ada", "notes": "VIP"}},
        )
        assert result_of(outcome)["success"] is False
        assert "File variable" in result_of(outcome)["error"]
        assert summarizer.calls == []

    async def test_summarize_finds_descriptor_by_element_id(self, run_graph, summarizer):
        outcome = await run_graph(
            [{"id": "a", "label": "ai.summarize", "config": {"fileVariable": "report", "apiKey": "k"}}],
            context={"attachment": {"elementId": "report", "fileName": "r.txt", "text": "Body text"}},
        )
        assert result_of(outcome)["success"] is True
        assert summarizer.calls == [("Body text", "k")]

    async def test_summarize_unsupported_type(self, run_graph):
        outcome = await run_graph(
            [{"id": "a", "label": "ai.summarize", "config": {"fileVariable": "doc", "apiKey": "k"}}],
            context={"doc": {"fileName": "scan.pdf", "mimeType": "application/pdf"}},
        )
        assert result_of(outcome)["errorCode"] == "UNSUPPORTED_FILE_TYPE"

    async def test_upload_then_download(self, run_graph, upload_dir):
        (upload_dir / "avatar.png").write_bytes(b"png")
        nodes = [
            {
                "id": "up",
                "label": "file.upload",
                "config": {"fileUploadElementId": "avatar", "allowedFileTypes": "image/*", "fileUploadMaxSizeMB": 1},
            },
            {
                "id": "down",
                "label": "file.download",
                "config": {"downloadSourceType": "path", "downloadPath": "avatar.png"},
            },
        ]
        outcome = await run_graph(
            nodes,
            [{"source": "up", "target": "down"}],
            context={"uploadedFiles": {"avatar": {"fileName": "avatar.png", "mimeType": "image/png", "size": 3}}},
        )
        assert outcome.all_succeeded
        assert outcome.context["lastUploadedFile"]["elementId"] == "avatar"
        assert outcome.context["lastDownload"] == {
            "url": "/media/avatar.png",
            "fileName": "avatar.png",
            "mimeType": "image/png",
            "size": 3,
        }
