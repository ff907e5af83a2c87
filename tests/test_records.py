"""
Records API Tests
"""
import io
import json


def pdf_file(name='report.pdf', body=b'%PDF-1.4 fake'):
    return (io.BytesIO(body), name, 'application/pdf')


class TestRecordCrud:
    """GET/POST /api/records and /api/records/<id>"""

    def test_create_and_list_newest_first(self, client, auth_headers, services):
        services.store.set('users/user-1/records/old', {'name': 'Old', 'createdAt': '2020-01-01T00:00:00+00:00'})
        response = client.post('/api/records', headers=auth_headers, json={'name': 'New record'})
        assert response.status_code == 201
        record_id = json.loads(response.data)['recordId']

        records = json.loads(client.get('/api/records', headers=auth_headers).data)['records']
        assert [r['id'] for r in records] == [record_id, 'old']
        assert records[0]['createdAt']

    def test_create_requires_body(self, client, auth_headers):
        assert client.post('/api/records', headers=auth_headers, json={}).status_code == 400

    def test_read_missing_is_404(self, client, auth_headers):
        assert client.get('/api/records/ghost', headers=auth_headers).status_code == 404

    def test_partial_update(self, client, auth_headers):
        record_id = json.loads(client.post('/api/records', headers=auth_headers,
                                           json={'name': 'A', 'comment': 'c'}).data)['recordId']
        response = client.put(f'/api/records/{record_id}', headers=auth_headers, json={'name': 'B'})
        assert response.status_code == 200

        record = json.loads(response.data)['record']
        assert record['name'] == 'B'
        assert record['comment'] == 'c'
        assert record['updatedAt']

    def test_update_missing_is_404(self, client, auth_headers):
        assert client.put('/api/records/ghost', headers=auth_headers, json={'name': 'x'}).status_code == 404

    def test_delete_removes_blobs(self, client, auth_headers, services):
        services.storage.upload('users/user-1/records/f.pdf', b'data', 'application/pdf')
        services.store.set('users/user-1/records/r1', {'name': 'R', 'paths': ['users/user-1/records/f.pdf']})
        response = client.delete('/api/records/r1', headers=auth_headers)
        assert response.status_code == 200
        assert services.store.get('users/user-1/records/r1') is None
        assert services.storage.content_type('users/user-1/records/f.pdf') == ''

    def test_storage_fields_are_not_client_writable(self, client, auth_headers, services):
        record_id = json.loads(client.post('/api/records', headers=auth_headers, json={
            'name': 'Sneaky', 'paths': ['users/user-2/records/secret.pdf'], 'urls': ['https://example.com/x'],
            'url': 'https://example.com/x', 'fileTypes': ['application/pdf'],
        }).data)['recordId']
        client.put(f'/api/records/{record_id}', headers=auth_headers,
                   json={'paths': ['users/user-2/records/secret.pdf']})

        record = services.store.get(f'users/user-1/records/{record_id}')
        assert record['name'] == 'Sneaky'
        for key in ('paths', 'urls', 'url', 'fileTypes'):
            assert key not in record

    def test_delete_leaves_other_users_blobs(self, client, auth_headers, services):
        services.storage.upload('users/user-2/records/secret.pdf', b'data', 'application/pdf')
        services.store.set('users/user-1/records/r1', {
            'name': 'R', 'paths': ['users/user-2/records/secret.pdf', 'users/user-1/../user-2/records/secret.pdf'],
        })
        assert client.delete('/api/records/r1', headers=auth_headers).status_code == 200
        assert services.storage.content_type('users/user-2/records/secret.pdf') == 'application/pdf'

    def test_records_are_per_user(self, client, auth_headers, other_headers):
        client.post('/api/records', headers=auth_headers, json={'name': 'Mine'})
        records = json.loads(client.get('/api/records', headers=other_headers).data)['records']
        assert records == []


class TestUpload:
    """POST /api/records/upload"""

    def test_requires_files_or_comment(self, client, auth_headers):
        response = client.post('/api/records/upload', headers=auth_headers, data={'recordName': 'x'})
        assert response.status_code == 400

    def test_comment_only(self, client, auth_headers, services):
        response = client.post('/api/records/upload', headers=auth_headers,
                               data={'comment': 'Felt dizzy after lunch'})
        assert response.status_code == 200

        data = json.loads(response.data)
        assert data['fileUrls'] == []
        record = services.store.get(f"users/user-1/records/{data['recordId']}")
        assert record['urls'] == []
        assert record['name'] == 'Medical Record'
        assert record['analysis'] == 'This is a comment-only record.'
        assert services.store.get('users/user-1/analysis/holistic')['needsUpdate'] is True

    def test_rejects_unsupported_type(self, client, auth_headers):
        response = client.post('/api/records/upload', headers=auth_headers, data={
            'files[]': [(io.BytesIO(b'hi'), 'notes.txt', 'text/plain')],
        }, content_type='multipart/form-data')
        assert response.status_code == 400

    def test_rejects_too_many_files(self, client, auth_headers, app):
        app.config['UPLOAD_MAX_FILES'] = 2
        response = client.post('/api/records/upload', headers=auth_headers, data={
            'files[]': [pdf_file(f'{i}.pdf') for i in range(3)],
        }, content_type='multipart/form-data')
        assert response.status_code == 400

    def test_upload_creates_record_and_analyzes(self, client, auth_headers, services, assistant):
        assistant.chat_replies = [
            '<DETAILED_ANALYSIS>Glucose 5.4 mmol/L</DETAILED_ANALYSIS>'
            '<BRIEF_SUMMARY>Normal glucose</BRIEF_SUMMARY>'
            '<DOCUMENT_TYPE>Blood Test</DOCUMENT_TYPE>'
            '<DATE>Jan 2024</DATE>'
            '<SUGGESTED_RECORD_NAME>Glucose panel</SUGGESTED_RECORD_NAME>'
            '<FHIR_RESOURCES>[]</FHIR_RESOURCES>'
        ]
        response = client.post('/api/records/upload', headers=auth_headers, data={
            'files[]': [pdf_file('a.pdf'), (io.BytesIO(b'\x89PNG'), 'b.png', 'image/png')],
        }, content_type='multipart/form-data')
        assert response.status_code == 200

        data = json.loads(response.data)
        assert len(data['fileUrls']) == 2
        assert all(u.startswith('memory://users/user-1/records/Medical_Record_') for u in data['fileUrls'])

        record = services.store.get(f"users/user-1/records/{data['recordId']}")
        assert record['fileCount'] == 2
        assert record['isMultiFile'] is True
        assert record['fileTypes'] == ['application/pdf', 'image/png']
        assert record['analysisInProgress'] is False
        assert record['briefSummary'] == 'Normal glucose'
        assert record['recordType'] == 'Blood Test'
        assert record['name'] == 'Glucose panel'

    def test_upload_without_auto_analyze(self, client, auth_headers, services, assistant):
        response = client.post('/api/records/upload', headers=auth_headers, data={
            'files': [pdf_file()],
            'recordName': 'My Scan',
            'auto_analyze': '0',
        }, content_type='multipart/form-data')
        data = json.loads(response.data)
        record = services.store.get(f"users/user-1/records/{data['recordId']}")
        assert record['analysisInProgress'] is True
        assert record['url'] == data['fileUrls'][0]
        assert assistant.chat_calls == []

    def test_all_uploads_failing_is_500(self, client, auth_headers, services, monkeypatch):
        def broken(path, data, content_type):
            raise RuntimeError('bucket gone')

        monkeypatch.setattr(services.storage, 'upload', broken)
        response = client.post('/api/records/upload', headers=auth_headers, data={
            'files[]': [pdf_file()],
        }, content_type='multipart/form-data')
        assert response.status_code == 500
        assert 'Failed to upload' in json.loads(response.data)['error']

    def test_file_count_matches_stored_files(self, client, auth_headers, services, monkeypatch):
        upload = services.storage.upload

        def flaky(path, data, content_type):
            if path.endswith('b.pdf'):
                raise RuntimeError('timeout')
            return upload(path, data, content_type)

        monkeypatch.setattr(services.storage, 'upload', flaky)
        response = client.post('/api/records/upload', headers=auth_headers, data={
            'files[]': [pdf_file('a.pdf'), pdf_file('b.pdf')],
            'auto_analyze': '0',
        }, content_type='multipart/form-data')

        data = json.loads(response.data)
        record = services.store.get(f"users/user-1/records/{data['recordId']}")
        assert record['fileCount'] == 1
        assert record['isMultiFile'] is False
        assert record['paths'][0].endswith('a.pdf')

    def test_filename_cannot_leave_record_folder(self, client, auth_headers, services):
        response = client.post('/api/records/upload', headers=auth_headers, data={
            'files[]': [pdf_file('../../user-2/evil.pdf')],
            'auto_analyze': '0',
        }, content_type='multipart/form-data')
        record = services.store.get(f"users/user-1/records/{json.loads(response.data)['recordId']}")
        assert '/' not in record['paths'][0].split('users/user-1/records/', 1)[1]
